"""Pytest configuration and fixtures."""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RELAY_CREDENTIAL"] = ""
os.environ["DEBUG"] = "true"

from bridgerelay.ledger.memory import InMemoryLedger
from bridgerelay.relay.database import build_engine
from bridgerelay.relay.journal import RelayJournal
from bridgerelay.relay.models import Base
from bridgerelay.utils.locks import clear_ledger_locks


@pytest.fixture(autouse=True)
def reset_locks():
    """Locks bind to the loop of the test that created them."""
    clear_ledger_locks()
    yield
    clear_ledger_locks()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def journal(db_session: AsyncSession) -> RelayJournal:
    """Create journal repository for testing."""
    return RelayJournal(db_session)


@pytest.fixture
def session_scope(session_factory):
    """Journal session scope for the coordinator, committing like get_db()."""

    @asynccontextmanager
    async def scope():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


@pytest.fixture
def ledger_a() -> InMemoryLedger:
    return InMemoryLedger("A", genesis={"alice": 1000, "carol": 300})


@pytest.fixture
def ledger_b() -> InMemoryLedger:
    return InMemoryLedger("B", genesis={"bob": 500})


@pytest.fixture
def settle():
    """Wait until deliveries, submissions and inclusions have all finished."""

    async def wait(coordinator, *ledgers) -> None:
        for _ in range(3):
            for ledger in ledgers:
                await ledger.wait_delivered()
            await coordinator.wait_idle()

    return wait
