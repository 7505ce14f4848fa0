"""Background workers for row execution."""

from bulkgen.workers.base import RowDispatcher
from bulkgen.workers.pool import RowWorkerPool
from bulkgen.workers.queue_dispatcher import PgQueuerRowDispatcher

__all__ = ["PgQueuerRowDispatcher", "RowDispatcher", "RowWorkerPool"]
