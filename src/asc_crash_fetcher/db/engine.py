"""Async SQLAlchemy engine and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import event, pool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from asc_crash_fetcher.config import get_settings
from asc_crash_fetcher.db.migrations import run_migrations
from asc_crash_fetcher.logging import get_logger

logger = get_logger(__name__)

# Module-level engine instance (bound by open_database)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def database_url(path: Path) -> str:
    """SQLAlchemy URL for a SQLite file."""
    return f"sqlite+aiosqlite:///{path}"


def _set_sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for(url: str) -> AsyncEngine:
    """Create an async engine with the SQLite pragmas installed."""
    engine = create_async_engine(
        url,
        echo=get_settings().environment == "development",
        future=True,
        poolclass=pool.NullPool,  # Required for SQLite to prevent "database is locked"
    )
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


def get_engine() -> AsyncEngine:
    """Get the engine bound by open_database."""
    if _engine is None:
        raise RuntimeError("database is not open; call open_database() first")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    return _async_session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session with automatic cleanup.

    Usage:
        async with get_session() as session:
            result = await session.execute(select(CrashSubmission))
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def migrate(engine: AsyncEngine) -> list[int]:
    """Bring the schema of an engine's database up to date."""
    async with engine.begin() as conn:
        applied = await conn.run_sync(run_migrations)
    if applied:
        logger.info("Database migrated to version {}", applied[-1])
    return applied


async def open_database(path: Path) -> AsyncEngine:
    """Open (creating if needed) the store at ``path`` and migrate it.

    Safe to call against an already-current schema. Rebinds the module-level
    engine, disposing any previous one.
    """
    await dispose_engine()

    global _engine
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine_for(database_url(path))
    await migrate(engine)
    _engine = engine
    return engine


async def dispose_engine() -> None:
    """Dispose the engine and close all connections.

    Call this when shutting down the application.
    """
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
