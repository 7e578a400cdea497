"""Pytest configuration and shared fixtures.

Usage Guide:
- For ORM and repository tests: use db_session and factories from tests.factories
- For API client tests: build an AscClient over httpx.MockTransport (make_client)
- For payload decoding tests: use dict fixtures from tests.fixtures.asc_responses
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from asc_crash_fetcher.asc.auth import TokenSigner
from asc_crash_fetcher.asc.client import AscClient
from asc_crash_fetcher.config import RetryConfig, get_settings
from asc_crash_fetcher.db.engine import _set_sqlite_pragmas
from asc_crash_fetcher.db.models import Base
from asc_crash_fetcher.logging import reset_logging

# -----------------------------------------------------------------------------
# Test Timeline Constants
#
# Stored timestamps are naive UTC; API payloads carry ISO strings with "Z".
# -----------------------------------------------------------------------------
MAR_01 = datetime(2026, 3, 1, 9, 0, 0)  # First crash created
MAR_02 = datetime(2026, 3, 2, 14, 30, 0)  # Second crash created
MAR_05 = datetime(2026, 3, 5, 8, 0, 0)  # First sync
MAR_06 = datetime(2026, 3, 6, 8, 0, 0)  # Second sync

MAR_01_ISO = "2026-03-01T09:00:00Z"
MAR_02_ISO = "2026-03-02T14:30:00Z"
MAR_03_ISO = "2026-03-03T11:15:00-08:00"  # 19:15 UTC

ISSUER_ID = "57246542-96fe-1a63-e053-0824d011072a"
KEY_ID = "2X9R4HXF34"
BASE_URL = "https://api.test"


# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
async def test_engine():
    """Create an in-memory SQLite engine for tests.

    Each test gets a fresh database with all tables created and foreign
    keys enforced.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(test_engine):
    """Create an async session with auto-rollback.

    Changes are rolled back after each test to ensure isolation.
    """
    session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


# -----------------------------------------------------------------------------
# Settings / Logging
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    """Keep ASC_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("ASC_"):
            monkeypatch.delenv(name)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    reset_logging()


# -----------------------------------------------------------------------------
# Credentials
# -----------------------------------------------------------------------------
@pytest.fixture(scope="session")
def ec_private_key() -> ec.EllipticCurvePrivateKey:
    """A throwaway P-256 key (App Store Connect keys are P-256)."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def private_key_pem(ec_private_key) -> str:
    """PKCS#8 PEM text, as found in an AuthKey_XXXX.p8 file."""
    return ec_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def signer(private_key_pem) -> TokenSigner:
    """Token signer for the test key."""
    return TokenSigner(ISSUER_ID, KEY_ID, private_key_pem)


# -----------------------------------------------------------------------------
# API client over a mock transport
# -----------------------------------------------------------------------------
Handler = Callable[[httpx.Request], httpx.Response]


class RecordedSleeps(list[float]):
    """Collects backoff delays instead of sleeping."""

    async def __call__(self, delay: float) -> None:
        self.append(delay)


@pytest.fixture
def sleeps() -> RecordedSleeps:
    return RecordedSleeps()


@pytest.fixture
def make_client(signer, sleeps):
    """Factory for an AscClient whose HTTP traffic goes to a handler function.

    Usage:
        client = make_client(lambda request: httpx.Response(200, json={...}))
    """

    def _make(
        handler: Handler,
        *,
        retry: RetryConfig | None = None,
        page_size: int = 2,
        max_pages: int = 50,
    ) -> AscClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = AscClient(
            signer,
            base_url=BASE_URL,
            retry=retry or RetryConfig(max_attempts=5, base_delay_seconds=1.0),
            page_size=page_size,
            max_pages=max_pages,
            http=http,
            sleep=sleeps,
        )
        return client

    return _make


def utc(value: datetime) -> datetime:
    """Attach UTC to a naive timestamp."""
    return value.replace(tzinfo=UTC)
