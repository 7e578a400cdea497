"""Repository for per-app, per-kind pagination progress."""

import asyncio
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from asc_crash_fetcher.db.models import RecordKind, SyncCursor, utcnow

from .base import BaseRepository


class SyncCursorRepository(BaseRepository[SyncCursor]):
    """Repository for SyncCursor entities.

    A cursor is started at the beginning of a pull, advanced after every
    page and completed at the end. A cursor that was started but never
    completed marks an interrupted pull.
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
        super().__init__(session, SyncCursor, write_lock)

    async def get(self, app_id: int, kind: RecordKind) -> SyncCursor | None:
        """Cursor for an app and record kind, if a pull ever started."""
        stmt = select(SyncCursor).where(SyncCursor.app_id == app_id, SyncCursor.kind == kind)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def start(
        self, app_id: int, kind: RecordKind, now: datetime | None = None
    ) -> SyncCursor:
        """Begin a full pull, resetting progress counters."""
        async with self.writing() as session:
            cursor = await self.get(app_id, kind)
            if cursor is None:
                cursor = SyncCursor(app_id=app_id, kind=kind)
                session.add(cursor)
            cursor.started_at = now or utcnow()
            cursor.next_url = None
            cursor.pages_fetched = 0
            cursor.records_seen = 0
            await session.flush()
            return cursor

    async def advance(self, cursor: SyncCursor, next_url: str | None, records: int) -> SyncCursor:
        """Record one fetched page and the link to the next one."""
        async with self.writing() as session:
            cursor.next_url = next_url
            cursor.pages_fetched += 1
            cursor.records_seen += records
            await session.flush()
            return cursor

    async def complete(self, cursor: SyncCursor, now: datetime | None = None) -> SyncCursor:
        """Mark the pull as finished."""
        async with self.writing() as session:
            cursor.next_url = None
            cursor.completed_at = now or utcnow()
            await session.flush()
            return cursor
