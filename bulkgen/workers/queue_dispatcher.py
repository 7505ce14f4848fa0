"""PgQueuer-backed row dispatcher.

Rows are enqueued as durable ``process_row`` jobs and claimed by this
process's PgQueuer worker loop. The entrypoint's concurrency_limit is
MAX_CONCURRENT_ROWS, which bounds rows in progress exactly like the
in-process pool.

Short Transaction Pattern:
    1. Claim job (PgQueuer automatic, FOR UPDATE SKIP LOCKED)
    2. Decode "<batch_id>:<row_id>" payload
    3. Run the row executor (it opens its own short transactions)
"""

import asyncio
import uuid

from pgqueuer.models import Job

from bulkgen.queue import ROW_ENTRYPOINT, QueueConnection, decode_row_payload, encode_row_payload
from bulkgen.utils.logging import get_logger
from bulkgen.workers.base import RowDispatcher, RowHandler

log = get_logger(__name__)

JOIN_POLL_INTERVAL_SECONDS = 0.5
SHUTDOWN_TIMEOUT_SECONDS = 30.0


class PgQueuerRowDispatcher(RowDispatcher):
    """Dispatch rows through pgqueuer jobs.

    Example:
        >>> connection = await initialize_pgqueuer()
        >>> dispatcher = PgQueuerRowDispatcher(connection, size=5, handler=executor.execute)
        >>> await dispatcher.start()
        >>> await dispatcher.submit(batch.id, row.id)
    """

    def __init__(
        self,
        connection: QueueConnection,
        size: int,
        handler: RowHandler,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SECONDS,
    ):
        super().__init__(size, handler)
        self._connection = connection
        self._shutdown_timeout = shutdown_timeout
        self._runner: asyncio.Task[None] | None = None
        self.register_entrypoints()

    def register_entrypoints(self) -> None:
        """Register the row entrypoint on the PgQueuer instance."""

        @self._connection.pgq.entrypoint(ROW_ENTRYPOINT, concurrency_limit=self.size)
        async def process_row(job: Job) -> None:
            batch_id, row_id = decode_row_payload(job.payload)
            log.info(
                "row_job_claimed",
                batch_id=str(batch_id),
                row_id=str(row_id),
                pgqueuer_job_id=str(job.id),
            )
            await self.run_row(batch_id, row_id)

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._runner = asyncio.create_task(self._connection.pgq.run(), name="pgqueuer-runner")
        log.info("row_queue_started", entrypoint=ROW_ENTRYPOINT, concurrency_limit=self.size)

    async def submit(self, batch_id: uuid.UUID, row_id: uuid.UUID) -> None:
        job_ids = await self._connection.queries.enqueue(
            ROW_ENTRYPOINT, encode_row_payload(batch_id, row_id)
        )
        log.info(
            "row_enqueued",
            batch_id=str(batch_id),
            row_id=str(row_id),
            pgqueuer_job_ids=[str(job_id) for job_id in job_ids],
        )

    async def pending_jobs(self) -> int:
        """Queued or picked row jobs, across every process sharing the queue."""
        statistics = await self._connection.queries.queue_size()
        return sum(stat.count for stat in statistics if stat.entrypoint == ROW_ENTRYPOINT)

    async def join(self) -> None:
        while self.active_rows or await self.pending_jobs():
            await asyncio.sleep(JOIN_POLL_INTERVAL_SECONDS)

    async def stop(self) -> None:
        """Ask the worker loop to finish, then close the connection pool."""
        runner, self._runner = self._runner, None
        self._connection.pgq.shutdown.set()
        if runner is not None:
            try:
                await asyncio.wait_for(runner, timeout=self._shutdown_timeout)
            except asyncio.TimeoutError:
                log.warning("row_queue_shutdown_timeout", timeout=self._shutdown_timeout)
        await self._connection.close()
        log.info("row_queue_stopped")
