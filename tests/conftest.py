"""
Pytest configuration and shared fixtures.

Tests run against a fresh SQLite file per test by default. Set
TEST_DATABASE_URL (e.g. postgresql+asyncpg://...) to run them against
PostgreSQL instead; the tables are dropped and recreated for every test.
"""

import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from leasequeue.config import Settings
from leasequeue.db import QueueStore, create_session_factory, create_tables, drop_tables
from leasequeue.db.connection import get_test_engine
from leasequeue.worker import handlers

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobqueue_test.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with empty queue tables."""
    engine = get_test_engine(database_url)
    await drop_tables(engine)
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> QueueStore:
    """A store whose leases never expire."""
    return QueueStore(session_factory)


@pytest.fixture
def expiring_store(session_factory: async_sessionmaker[AsyncSession]) -> QueueStore:
    """A store whose leases expire after 30 seconds."""
    return QueueStore(session_factory, lease_duration=timedelta(seconds=30))


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        queue_name="test-queue",
        lease_duration_seconds=5,
        checkout_max_attempts=3,
        log_level="DEBUG",
        log_format="console",
        worker_poll_interval_seconds=0.01,
        reaper_interval_seconds=1,
    )


@pytest.fixture
def job_type() -> str:
    """Generate a unique job type so registered handlers never collide."""
    return f"test-job-{uuid4().hex[:8]}"


@pytest.fixture
def clean_handlers():
    """Unregister any handler a test registers."""
    before = set(handlers.list_handlers())
    yield
    for name in set(handlers.list_handlers()) - before:
        handlers.unregister_handler(name)
