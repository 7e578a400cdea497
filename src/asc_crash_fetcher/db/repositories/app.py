"""Repository for monitored apps."""

import asyncio

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from asc_crash_fetcher.db.models import App

from .base import BaseRepository


class AppRepository(BaseRepository[App]):
    """Repository for App entities.

    Apps are keyed by bundle id and never deleted by a sync.
    """

    def __init__(
        self,
        session: AsyncSession,
        write_lock: asyncio.Lock | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            session: Async SQLAlchemy session
            write_lock: Optional lock to serialize write operations (for concurrent use)
        """
        super().__init__(session, App, write_lock)

    async def get_by_bundle_id(self, bundle_id: str) -> App | None:
        """Get an app by bundle id."""
        return await self._get_by_field("bundle_id", bundle_id)

    async def list_apps(self) -> list[App]:
        """All known apps, by bundle id."""
        result = await self._session.execute(select(App).order_by(App.bundle_id))
        return list(result.scalars().all())

    async def upsert_app(
        self,
        bundle_id: str,
        asc_id: str | None = None,
        name: str | None = None,
    ) -> App:
        """Create the app row for a bundle id, or refresh its remote id and name.

        Args:
            bundle_id: Bundle identifier (unique)
            asc_id: App Store Connect app id, when resolved
            name: Display name, when known

        Returns:
            The App (flushed, has ID)
        """
        async with self.writing() as session:
            app = await self.get_by_bundle_id(bundle_id)
            if app is None:
                app = App(bundle_id=bundle_id, asc_id=asc_id, name=name)
                session.add(app)
            else:
                if asc_id is not None:
                    app.asc_id = asc_id
                if name is not None:
                    app.name = name
            await session.flush()
            return app
