"""Base repository pattern implementation for async SQLAlchemy.

Provides common session handling, write serialization and lookups shared
by all repositories.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, nullcontext
from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from asc_crash_fetcher.db.models import Base

# Generic type variable for model classes
ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Base repository with common async session handling.

    Usage:
        class AppRepository(BaseRepository[App]):
            def __init__(self, session: AsyncSession) -> None:
                super().__init__(session, App)

            async def get_by_bundle_id(self, bundle_id: str) -> App | None:
                return await self._get_by_field("bundle_id", bundle_id)

    Concurrency:
        When several coroutines share one session (concurrent attachment
        downloads), pass a shared write_lock. Every write method runs inside
        ``self.writing()``, so the session is never used by two coroutines
        at once. Callers must not hold the lock while awaiting network I/O.
    """

    def __init__(
        self,
        session: AsyncSession,
        model_class: type[ModelT],
        write_lock: asyncio.Lock | None = None,
    ) -> None:
        """Initialize the repository with a session.

        Args:
            session: Async SQLAlchemy session (caller manages lifecycle)
            model_class: The SQLAlchemy model class this repository manages
            write_lock: Optional lock to serialize write operations (shared across repos)
        """
        self._session = session
        self._model_class = model_class
        self._write_lock = write_lock

    @property
    def session(self) -> AsyncSession:
        """Access the underlying session."""
        return self._session

    @asynccontextmanager
    async def writing(self) -> AsyncIterator[AsyncSession]:
        """Hold the shared write lock (if any) for a read-modify-write."""
        lock: Any = self._write_lock if self._write_lock is not None else nullcontext()
        async with lock:
            yield self._session

    # -------------------------------------------------------------------------
    # Common Read Operations
    # -------------------------------------------------------------------------

    async def get_by_id(self, id: int) -> ModelT | None:
        """Get an entity by its primary key ID.

        Args:
            id: Primary key ID

        Returns:
            Entity or None if not found
        """
        return await self._session.get(self._model_class, id)

    async def _get_by_field(self, field_name: str, value: object) -> ModelT | None:
        """Get an entity by a specific field value.

        Args:
            field_name: Name of the model field
            value: Value to match

        Returns:
            First matching entity or None
        """
        stmt = select(self._model_class).where(getattr(self._model_class, field_name) == value)
        result = await self._session.execute(stmt)
        return result.unique().scalar_one_or_none()

    async def count(self) -> int:
        """Count total entities of this type."""
        stmt = select(func.count()).select_from(self._model_class)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    # -------------------------------------------------------------------------
    # Common Write Operations
    # -------------------------------------------------------------------------

    def add(self, entity: ModelT) -> ModelT:
        """Add an entity to the session (does not flush).

        Args:
            entity: Entity to add

        Returns:
            The same entity (for chaining)
        """
        self._session.add(entity)
        return entity

    async def flush(self) -> None:
        """Flush pending changes to the database (no commit).

        Callers already inside ``writing()`` use the session directly.
        """
        async with self.writing() as session:
            await session.flush()
