"""Commit Manager - commit boundaries for sync resilience.

A sync commits as it goes instead of once at session exit, so an
interruption loses at most the last uncommitted batch. With the default
batch size of 1 every reconciled record and every attachment state change
is durable as soon as it is made.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from asc_crash_fetcher.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class CommitManager:
    """Manages commit boundaries for a sync run.

    Shares the repositories' write_lock so a commit never overlaps a flush
    from a concurrent download task.

    Usage:
        write_lock = asyncio.Lock()
        commit_manager = CommitManager(session, write_lock, batch_size=1)

        await repo.update_attachment_state(...)
        await commit_manager.record_success()  # Commits at batch_size

        await commit_manager.finalize()  # Commit remaining

    Attributes:
        uncommitted_count: Number of writes pending commit.
        total_committed: Total writes committed across all batches.
    """

    def __init__(
        self,
        session: AsyncSession,
        write_lock: asyncio.Lock | None = None,
        batch_size: int = 1,
    ) -> None:
        """Initialize the commit manager.

        Args:
            session: Async SQLAlchemy session to commit on.
            write_lock: Lock shared with the repositories (optional).
            batch_size: Successful writes before an automatic commit.
        """
        self._session = session
        self._write_lock = write_lock
        self._batch_size = batch_size
        self._uncommitted_count = 0
        self._total_committed = 0

    @property
    def uncommitted_count(self) -> int:
        """Number of writes pending commit."""
        return self._uncommitted_count

    @property
    def total_committed(self) -> int:
        """Total writes committed across all batches."""
        return self._total_committed

    @property
    def batch_size(self) -> int:
        """Configured batch size."""
        return self._batch_size

    async def record_success(self) -> int:
        """Count one successful write, committing when the batch is full.

        Returns:
            Number of writes committed (0 if the batch is not full yet).
        """
        self._uncommitted_count += 1
        if self._uncommitted_count >= self._batch_size:
            return await self.commit()
        return 0

    async def commit(self) -> int:
        """Commit pending writes now.

        Returns:
            Number of writes committed (0 if nothing was pending).
        """
        if self._uncommitted_count == 0:
            return 0

        if self._write_lock:
            async with self._write_lock:
                await self._session.commit()
        else:
            await self._session.commit()

        committed = self._uncommitted_count
        self._total_committed += committed
        self._uncommitted_count = 0

        logger.debug("Committed {} write(s) (total: {})", committed, self._total_committed)
        return committed

    async def finalize(self) -> int:
        """Commit whatever is left of a partial batch.

        Returns:
            Number of writes committed (0 if nothing pending).
        """
        return await self.commit()
