"""
Unit test configuration - uses in-memory SQLite for isolation
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from tokenvault.connectors import RefresherRegistry, RefreshOutcome
from tokenvault.core.crypto import CryptoEngine
from tokenvault.core.database import Base
from tokenvault.core.metadata import utcnow
from tokenvault.core.policy import RotationPolicy
from tokenvault.repositories import AccountRepository
from tokenvault.services import CredentialLifecycleManager

# Import models to register them with Base.metadata
from tokenvault.models import SocialAccount  # noqa: F401

# In-memory SQLite for fast unit tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_MASTER_KEY = bytes.fromhex(
    "000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"
)
TEST_KEY_ID = "test-key"


class FakeClock:
    """Manually advanced clock; starts at the real current time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(scope="session")
def crypto_engine() -> CryptoEngine:
    """One engine per run; key derivation is deliberately slow."""
    return CryptoEngine(TEST_MASTER_KEY, key_id=TEST_KEY_ID)


@pytest_asyncio.fixture
async def session_factory():
    """Isolated in-memory database per test"""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def repository(session_factory) -> AccountRepository:
    return AccountRepository(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def refresher() -> AsyncMock:
    """Platform refresher that succeeds with a fresh token pair."""
    mock = AsyncMock()
    mock.refresh.return_value = RefreshOutcome(
        success=True,
        new_access_token="new-access-token",
        new_refresh_token="new-refresh-token",
        new_expires_at=None,
    )
    return mock


@pytest.fixture
def manager(crypto_engine, repository, refresher, clock) -> CredentialLifecycleManager:
    registry = RefresherRegistry({"instagram": refresher, "facebook": refresher})
    return CredentialLifecycleManager(
        crypto_engine,
        repository,
        registry,
        policy=RotationPolicy(),
        refresh_timeout=1.0,
        clock=clock,
    )
