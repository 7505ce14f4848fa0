"""Batch orchestrator facade.

Wires the credit ledger, rendering provider, stitcher, row dispatcher, state
machine, recovery controller and stitch coordinator together and exposes the
orchestrator's public operations. The HTTP layer only ever talks to this
class.

Lifecycle:
    orchestrator = BatchOrchestrator(session_factory, provider, stitcher, settings)
    await orchestrator.start()      # dispatcher up, in-flight rows recovered
    ...
    await orchestrator.shutdown()   # dispatcher stopped, clients closed

Row Dispatch:
    With a QueueConnection (PostgreSQL) rows go through pgqueuer jobs;
    without one they run on the in-process RowWorkerPool.
"""

import uuid
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkgen.config import OrchestratorSettings
from bulkgen.providers.base import ProviderJobStatus, RenderingProvider
from bulkgen.queue import QueueConnection
from bulkgen.schemas.batch import BaseConfig, BatchStatusResponse, RowSpec, StitchResponse
from bulkgen.services.batch_state_machine import BatchStateMachine
from bulkgen.services.credit_ledger import CreditLedger
from bulkgen.services.recovery import AbortSummary, RecoveryController
from bulkgen.services.row_executor import JobWaiter, RowExecutor
from bulkgen.services.stitch_coordinator import StitchCoordinator
from bulkgen.stitchers.base import Stitcher
from bulkgen.utils.logging import get_logger
from bulkgen.workers.base import RowDispatcher
from bulkgen.workers.pool import RowWorkerPool
from bulkgen.workers.queue_dispatcher import PgQueuerRowDispatcher

log = get_logger(__name__)


class BatchOrchestrator:
    """Single entry point for batch operations.

    Example:
        >>> orchestrator = BatchOrchestrator(session_factory, StubProvider(), None, settings)
        >>> await orchestrator.start()
        >>> batch_id = await orchestrator.launch_batch("user-1", rows, staged=True)
        >>> status = await orchestrator.get_batch_status(batch_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: RenderingProvider,
        stitcher: Stitcher | None,
        settings: OrchestratorSettings,
        queue: QueueConnection | None = None,
    ):
        self.settings = settings
        self.provider = provider
        self.stitcher = stitcher
        self.ledger = CreditLedger(session_factory)
        self.waiter = JobWaiter()
        self.pool: RowDispatcher
        if queue is not None:
            self.pool = PgQueuerRowDispatcher(
                queue, settings.max_concurrent_rows, handler=self._execute_row
            )
        else:
            self.pool = RowWorkerPool(settings.max_concurrent_rows, handler=self._execute_row)
        self.state_machine = BatchStateMachine(session_factory, settings, dispatch=self.pool.submit)
        self.executor = RowExecutor(
            session_factory,
            self.ledger,
            provider,
            self.state_machine,
            settings,
            waiter=self.waiter,
        )
        self.recovery = RecoveryController(session_factory, self.state_machine, self.ledger, provider)
        self.stitching = StitchCoordinator(session_factory, self.state_machine, stitcher)

    async def _execute_row(self, batch_id: uuid.UUID, row_id: uuid.UUID) -> None:
        await self.executor.execute(batch_id, row_id)

    async def start(self) -> int:
        """Start row dispatch and resume rows left in flight by a restart.

        Returns:
            Number of rows recovered.
        """
        await self.pool.start()
        recovered = await self.recovery.recover_inflight()
        log.info(
            "orchestrator_started",
            provider=self.provider.name,
            max_concurrent_rows=self.settings.max_concurrent_rows,
            dispatcher=type(self.pool).__name__,
            stitching_enabled=self.stitcher is not None,
            recovered_rows=recovered,
        )
        return recovered

    async def drain(self) -> None:
        """Wait until every dispatched row has settled."""
        await self.pool.join()

    async def shutdown(self) -> None:
        await self.pool.stop()
        await self.provider.close()
        if self.stitcher is not None:
            await self.stitcher.close()
        log.info("orchestrator_stopped")

    async def launch_batch(
        self,
        owner_id: str,
        rows: Sequence[RowSpec | dict],
        base_config: BaseConfig | dict | None = None,
        staged: bool = True,
        name: str | None = None,
    ) -> uuid.UUID:
        return await self.state_machine.launch(
            owner_id, rows, base_config=base_config, staged=staged, name=name
        )

    async def get_batch_status(self, batch_id: uuid.UUID) -> BatchStatusResponse:
        return await self.state_machine.get_status(batch_id)

    async def resume_batch(self, batch_id: uuid.UUID) -> int:
        return await self.state_machine.resume(batch_id)

    async def abort_batch(self, batch_id: uuid.UUID) -> AbortSummary:
        return await self.recovery.abort(batch_id)

    async def retry_failed(self, batch_id: uuid.UUID) -> int:
        return await self.recovery.retry_failed(batch_id)

    async def stitch_batch(self, batch_id: uuid.UUID, force: bool = False) -> StitchResponse:
        return await self.stitching.stitch_batch(batch_id, force=force)

    async def stitch_row(self, row_id: uuid.UUID, force: bool = False) -> StitchResponse:
        return await self.stitching.stitch_row(row_id, force=force)

    def handle_provider_callback(self, status: ProviderJobStatus) -> bool:
        """Deliver a provider callback to the executor waiting on that job.

        Returns:
            True if a row was waiting on the job. Unknown or late callbacks
            are ignored; the executor's polling remains authoritative.
        """
        delivered = self.waiter.deliver(status)
        log.info(
            "provider_callback_received",
            job_id=status.job_id,
            state=status.state.value,
            delivered=delivered,
        )
        return delivered
