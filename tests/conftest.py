"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gorillionaire_ledger.ledger.notifier import NotificationDispatcher
from gorillionaire_ledger.ledger.service import ActivityLedger
from gorillionaire_ledger.storage.models import Base


class FakeClock:
    """Mutable clock injected wherever services read the current time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def sample_address() -> str:
    """Sample wallet address for testing."""
    return "0x1234567890abcdef1234567890abcdef12345678"


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting on Wednesday 2024-06-12 12:00 UTC."""
    return FakeClock(datetime(2024, 6, 12, 12, 0, tzinfo=UTC))


@pytest.fixture
async def async_engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine so concurrent sessions share one database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher() -> NotificationDispatcher:
    """Dispatcher with no channels."""
    return NotificationDispatcher()


@pytest.fixture
def ledger(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher,
    clock: FakeClock,
) -> ActivityLedger:
    return ActivityLedger(session_factory, dispatcher=dispatcher, clock=clock)
