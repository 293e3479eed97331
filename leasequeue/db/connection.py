"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from leasequeue.config import get_settings
from leasequeue.db.models import Base

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        url = make_url(settings.database_url)
        if url.get_backend_name() == "sqlite":
            # One connection per session; SQLite serializes writers itself
            _engine = create_async_engine(url, poolclass=NullPool)
        else:
            _engine = create_async_engine(
                url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                echo=settings.log_level == "DEBUG",
                pool_pre_ping=True,
            )
    return _engine


def get_test_engine(database_url: str) -> AsyncEngine:
    """
    Create a test database engine with NullPool.

    Args:
        database_url: The database URL for testing.

    Returns:
        AsyncEngine: The test SQLAlchemy async engine instance.
    """
    return create_async_engine(
        database_url,
        poolclass=NullPool,
        echo=False,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by the queue store."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db() -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.

    Returns:
        The session factory bound to the global engine.
    """
    global AsyncSessionLocal
    AsyncSessionLocal = create_session_factory(get_engine())
    logger.info("Database connection initialized")
    return AsyncSessionLocal


async def create_tables(engine: AsyncEngine) -> None:
    """Create the queue tables if missing. Production schemas come from Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine: AsyncEngine) -> None:
    """Drop the queue tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")

