"""PgQueuer initialization for row dispatch.

Admitted rows are enqueued as pgqueuer jobs on the ``process_row``
entrypoint. Workers claim jobs atomically via FOR UPDATE SKIP LOCKED, so the
queue survives process restarts and several orchestrator processes can share
one database.

Architecture Pattern:
    - AsyncpgPoolDriver: Connection pool for production throughput
    - Queries: Schema installation (when missing) and job enqueueing
    - Job payload: "<batch_id>:<row_id>" as UTF-8 bytes

Usage:
    from bulkgen.queue import initialize_pgqueuer

    connection = await initialize_pgqueuer()
    dispatcher = PgQueuerRowDispatcher(connection, size=5, handler=executor.execute)
"""

import os
import uuid
from dataclasses import dataclass

import asyncpg
from pgqueuer import PgQueuer
from pgqueuer.db import AsyncpgPoolDriver
from pgqueuer.queries import Queries

from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

ROW_ENTRYPOINT = "process_row"
PGQUEUER_TABLE = "pgqueuer"


@dataclass
class QueueConnection:
    """Everything a pgqueuer-backed dispatcher needs."""

    pgq: PgQueuer
    queries: Queries
    pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            log.info("asyncpg_pool_closed")


def is_postgres_url(database_url: str | None) -> bool:
    return bool(database_url) and database_url.startswith(("postgresql", "postgres://"))


def asyncpg_dsn(database_url: str) -> str:
    """Strip the SQLAlchemy driver suffix (asyncpg wants a plain DSN)."""
    return database_url.replace("postgresql+asyncpg://", "postgresql://", 1)


def encode_row_payload(batch_id: uuid.UUID, row_id: uuid.UUID) -> bytes:
    return f"{batch_id}:{row_id}".encode()


def decode_row_payload(payload: bytes | None) -> tuple[uuid.UUID, uuid.UUID]:
    """Parse a job payload back into (batch_id, row_id).

    Raises:
        ValueError: If the payload is missing or malformed
    """
    if payload is None:
        raise ValueError("Job payload is None")
    if not isinstance(payload, bytes):
        raise ValueError(f"Job payload must be bytes, got {type(payload)}")
    batch_part, _, row_part = payload.decode().partition(":")
    try:
        return uuid.UUID(batch_part), uuid.UUID(row_part)
    except ValueError as e:
        raise ValueError(f"Invalid row job payload: {payload!r}") from e


async def initialize_pgqueuer(database_url: str | None = None) -> QueueConnection:
    """Create the asyncpg pool, install the pgqueuer schema and build PgQueuer.

    Args:
        database_url: PostgreSQL URL; defaults to DATABASE_URL

    Raises:
        ValueError: If no database URL is available
        asyncpg.PostgresError: If the database connection fails
    """
    database_url = database_url or os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not set")

    log.info("initializing_asyncpg_pool", min_size=2, max_size=10, timeout=30)
    pool = await asyncpg.create_pool(
        dsn=asyncpg_dsn(database_url),
        min_size=2,
        max_size=10,
        timeout=30,
        command_timeout=1800,
    )

    driver = AsyncpgPoolDriver(pool)
    queries = Queries(driver)
    if not await queries.has_table(PGQUEUER_TABLE):
        log.info("installing_pgqueuer_schema")
        await queries.install()
        log.info("pgqueuer_schema_installed")

    pgq = PgQueuer(driver)
    log.info("pgqueuer_initialized", entrypoint=ROW_ENTRYPOINT)
    return QueueConnection(pgq=pgq, queries=queries, pool=pool)
