"""Shared pytest fixtures for async database and orchestrator testing.

Model tests use an in-memory SQLite session. Service tests need several
concurrent sessions (one per state transition), so they get a file-backed
SQLite database per test instead.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkgen.config import OrchestratorSettings
from bulkgen.database import create_test_engine
from bulkgen.models import Base
from bulkgen.services.orchestrator import BatchOrchestrator
from bulkgen.utils import alerts
from tests.support.fakes import FakeStitcher, ScriptedProvider


@pytest_asyncio.fixture
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine, _ = create_test_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(async_engine):
    """Single session bound to the in-memory engine (expire_on_commit=False)."""
    factory = async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a file-backed SQLite database.

    Yields:
        async_sessionmaker: Factory shared by every service under test.
    """
    engine, factory = create_test_engine(f"sqlite+aiosqlite:///{tmp_path / 'bulkgen.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest.fixture
def settings() -> OrchestratorSettings:
    """Fast settings: 10ms polls, no backoff, two rows at a time."""
    return OrchestratorSettings(
        max_concurrent_rows=2,
        test_run_size=3,
        poll_interval_seconds=0.01,
        unit_timeout_seconds=2.0,
        max_unit_attempts=3,
        retry_backoff_seconds=0.0,
        retry_backoff_max_seconds=0.0,
    )


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def stitcher() -> FakeStitcher:
    return FakeStitcher()


@pytest_asyncio.fixture
async def orchestrator(session_factory, provider, stitcher, settings):
    """Started orchestrator; shut down after the test."""
    orch = BatchOrchestrator(session_factory, provider, stitcher, settings)
    await orch.start()
    yield orch
    await orch.shutdown()


@pytest.fixture(autouse=True)
def reset_alert_throttle():
    """Alert throttling is module state; isolate it per test."""
    alerts._last_alert_times.clear()
    yield
    alerts._last_alert_times.clear()
