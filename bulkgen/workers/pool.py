"""In-process row worker pool.

A fixed number of worker coroutines consume admitted rows from an
asyncio.Queue. The pool size is the cap on rows simultaneously in progress;
when a row settles its worker immediately picks up the next admitted row,
which is how admission "refills" the pool.

Used when the database is not PostgreSQL (local SQLite runs and the test
suite), where the pgqueuer schema cannot be installed. PostgreSQL
deployments dispatch through PgQueuerRowDispatcher instead.

Architecture Pattern:
    - Fixed worker count, not one task per row
    - Each worker runs one row at a time (units inside a row are sequential)
    - Graceful Shutdown: stop() lets in-flight rows reach their next await,
      then cancels workers; rows left in_progress resume on next startup
"""

import asyncio
import uuid

from bulkgen.utils.logging import get_logger
from bulkgen.workers.base import RowDispatcher, RowHandler

log = get_logger(__name__)


class RowWorkerPool(RowDispatcher):
    """Fixed-size pool of row workers.

    Example:
        >>> pool = RowWorkerPool(size=5, handler=executor.execute)
        >>> await pool.start()
        >>> await pool.submit(batch.id, row.id)
        >>> await pool.join()
        >>> await pool.stop()
    """

    def __init__(self, size: int, handler: RowHandler):
        super().__init__(size, handler)
        self._queue: asyncio.Queue[tuple[uuid.UUID, uuid.UUID]] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def queued_rows(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Spawn the worker coroutines (idempotent)."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"row-worker-{index}")
            for index in range(self.size)
        ]
        log.info("row_pool_started", size=self.size)

    async def submit(self, batch_id: uuid.UUID, row_id: uuid.UUID) -> None:
        self._queue.put_nowait((batch_id, row_id))

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the workers and wait for them to exit."""
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        log.info("row_pool_stopped", abandoned_rows=self._queue.qsize())

    async def _worker(self) -> None:
        while True:
            batch_id, row_id = await self._queue.get()
            try:
                await self.run_row(batch_id, row_id)
            finally:
                self._queue.task_done()
