"""Tests for CommitManager commit boundaries."""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from asc_crash_fetcher.asc.sync.commit_manager import CommitManager
from asc_crash_fetcher.db.models import App


class TestCommitManagerBatching:
    """Test record_success counting and batch commits."""

    async def test_default_batch_commits_every_write(self, db_session):
        """With batch size 1 each write is committed at once."""
        # Arrange
        manager = CommitManager(db_session)

        # Act
        committed = await manager.record_success()

        # Assert
        assert committed == 1
        assert manager.uncommitted_count == 0
        assert manager.total_committed == 1

    async def test_commit_waits_for_full_batch(self, db_session):
        # Arrange
        manager = CommitManager(db_session, batch_size=3)

        # Act
        results = [await manager.record_success() for _ in range(7)]

        # Assert
        assert results == [0, 0, 3, 0, 0, 3, 0]
        assert manager.total_committed == 6
        assert manager.uncommitted_count == 1

    async def test_finalize_commits_partial_batch(self, db_session):
        manager = CommitManager(db_session, batch_size=10)
        for _ in range(4):
            await manager.record_success()

        assert await manager.finalize() == 4
        assert manager.uncommitted_count == 0
        assert await manager.finalize() == 0

    async def test_commit_noop_when_empty(self, db_session):
        manager = CommitManager(db_session, batch_size=5)

        assert await manager.commit() == 0
        assert manager.total_committed == 0


class TestCommitManagerDurability:
    """Test that committed writes survive a later failure."""

    async def test_committed_rows_visible_to_other_sessions(self, test_engine):
        # Arrange
        factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

        async with factory() as session:
            manager = CommitManager(session)
            session.add(App(bundle_id="com.example.kept"))
            await session.flush()
            await manager.record_success()

            session.add(App(bundle_id="com.example.lost"))
            await session.flush()
            await session.rollback()

        # Act
        async with factory() as session:
            bundle_ids = (await session.scalars(select(App.bundle_id))).all()

        # Assert
        assert list(bundle_ids) == ["com.example.kept"]


class TestCommitManagerWriteLock:
    """Test CommitManager respects the shared write_lock."""

    async def test_commit_waits_for_write_lock(self, db_session):
        """A commit never overlaps a repository write holding the lock."""
        # Arrange
        write_lock = asyncio.Lock()
        manager = CommitManager(db_session, write_lock=write_lock)

        # Act
        async with write_lock:
            task = asyncio.create_task(manager.record_success())
            await asyncio.sleep(0.01)
            assert not task.done()

        # Assert
        await task
        assert manager.total_committed == 1

    @pytest.mark.parametrize("batch_size", [1, 5, 100])
    async def test_batch_size_property(self, db_session, batch_size):
        manager = CommitManager(db_session, batch_size=batch_size)

        assert manager.batch_size == batch_size
