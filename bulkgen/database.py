"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration and the
session factory handed to the orchestrator. Every service opens one short
session per state transition and closes it before doing any provider I/O.

Usage:
    from bulkgen.database import async_session_factory

    async with async_session_factory() as db:
        batch = await db.get(Batch, batch_id)
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bulkgen.config import get_database_url

# DATABASE_URL may be absent during import in tests
_database_url = os.getenv("DATABASE_URL")

if _database_url:
    engine = create_async_engine(
        get_database_url(),
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )
else:
    engine = None  # type: ignore[assignment]


async_session_factory: async_sessionmaker[AsyncSession] | None = (
    async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # CRITICAL: objects are read after their session commits
    )
    if engine
    else None
)


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    test_engine = create_async_engine(
        database_url,
        echo=False,
    )
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
