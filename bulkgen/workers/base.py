"""Row dispatcher interface shared by the queue backends.

A dispatcher accepts admitted rows (submit) and runs each one through the
row handler with at most ``size`` rows in progress at once.

Re-run Guard:
    Only one execution of a row may be active in the process. A row that is
    submitted again while it is still executing (a retry can reset a failed
    row to pending before its worker has finished post-settlement work such
    as alerting) is never dropped: the active execution runs the handler once
    more when it finishes, and the handler decides from persisted state
    whether there is anything left to do.
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

RowHandler = Callable[[uuid.UUID, uuid.UUID], Awaitable[None]]


class RowDispatcher(ABC):
    """Bounded, duplicate-safe row execution.

    Attributes:
        size: Maximum rows in progress at once (MAX_CONCURRENT_ROWS)
        active_rows: Rows currently executing in this process
    """

    def __init__(self, size: int, handler: RowHandler):
        if size < 1:
            raise ValueError(f"Pool size must be at least 1, got {size}")
        self.size = size
        self.active_rows: int = 0
        self._handler = handler
        self._executing: set[uuid.UUID] = set()
        self._rerun: set[uuid.UUID] = set()

    @property
    def queued_rows(self) -> int:
        """Rows waiting for a free slot, when the backend can tell cheaply."""
        return 0

    def is_executing(self, row_id: uuid.UUID) -> bool:
        return row_id in self._executing

    @abstractmethod
    async def start(self) -> None:
        """Begin consuming submitted rows (idempotent)."""

    @abstractmethod
    async def submit(self, batch_id: uuid.UUID, row_id: uuid.UUID) -> None:
        """Queue a row for execution. Never drops a submission."""

    @abstractmethod
    async def join(self) -> None:
        """Wait until every submitted row has been executed."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop consuming rows; rows left in_progress resume on next startup."""

    async def run_row(self, batch_id: uuid.UUID, row_id: uuid.UUID) -> None:
        """Execute one row, folding concurrent submissions into a re-run."""
        if row_id in self._executing:
            self._rerun.add(row_id)
            log.info("row_rerun_requested", batch_id=str(batch_id), row_id=str(row_id))
            return

        self._executing.add(row_id)
        self.active_rows += 1
        try:
            while True:
                try:
                    await self._handler(batch_id, row_id)
                except Exception as e:
                    # The handler settles its own failures; anything here is a bug
                    log.exception(
                        "row_handler_unhandled_error",
                        batch_id=str(batch_id),
                        row_id=str(row_id),
                        error=str(e),
                    )
                if row_id not in self._rerun:
                    break
                self._rerun.discard(row_id)
        finally:
            self.active_rows -= 1
            self._executing.discard(row_id)
            self._rerun.discard(row_id)
