"""Failure recovery: retry failed rows, abort batches, resume after restart.

Retry Flow:
    partially_failed|completed → running
    failed rows → pending (reservation, charges and errors cleared,
    every unit re-rendered), then re-admitted through the worker pool

Abort Flow:
    Under the batch lock:
        1. Batch → cancelled (rows in flight observe this on their next transition)
        2. pending and in_progress rows → failed / CANCELLED
        3. Commit, then refund every active reservation of those rows
    Provider jobs still running are cancelled best-effort afterwards.

Crash Recovery:
    recover_inflight() re-submits admitted but unresolved rows of executing
    batches; the executor resumes in_progress rows on their persisted
    reservation and provider job ids.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from bulkgen.exceptions import ErrorKind, InvalidStateTransitionError, NothingToRetryError
from bulkgen.models import (
    ABORTABLE_BATCH_STATUSES,
    EXECUTING_BATCH_STATUSES,
    Batch,
    BatchRow,
    BatchStatus,
    RowStatus,
    utcnow,
)
from bulkgen.providers.base import RenderingProvider
from bulkgen.services.batch_state_machine import BatchStateMachine
from bulkgen.services.credit_ledger import CreditLedger
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

RETRYABLE_BATCH_STATUSES = frozenset({BatchStatus.PARTIALLY_FAILED, BatchStatus.COMPLETED})

ABORT_MESSAGE = "Batch aborted before this row finished"


@dataclass(frozen=True)
class AbortSummary:
    """What an abort changed."""

    batch_id: uuid.UUID
    rows_cancelled: int
    reservations_refunded: int
    provider_jobs_cancelled: int


class RecoveryController:
    """Retry, abort and restart recovery for batches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: BatchStateMachine,
        ledger: CreditLedger,
        provider: RenderingProvider,
    ):
        self._session_factory = session_factory
        self._state_machine = state_machine
        self._ledger = ledger
        self._provider = provider

    async def retry_failed(self, batch_id: uuid.UUID) -> int:
        """Reset every failed row to pending and re-admit it.

        Completed rows are untouched. A retried row gets a fresh reservation
        when the executor claims it; its previous reservation was already
        refunded when it failed.

        Returns:
            Number of rows re-admitted.

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateTransitionError: If the batch is still executing,
                paused or cancelled
            NothingToRetryError: If the batch has no failed rows
        """
        async with self._state_machine.lock(batch_id):
            async with self._session_factory() as db:
                batch = await self._state_machine.load_batch(db, batch_id)
                if batch.status not in RETRYABLE_BATCH_STATUSES:
                    raise InvalidStateTransitionError(
                        f"Failed rows can only be retried once a batch has settled, "
                        f"batch is {batch.status.value}",
                        from_status=batch.status,
                        to_status=BatchStatus.RUNNING,
                    )

                result = await db.execute(
                    select(BatchRow)
                    .where(BatchRow.batch_id == batch_id, BatchRow.status == RowStatus.FAILED)
                    .options(selectinload(BatchRow.units))
                    .order_by(BatchRow.ordinal)
                )
                failed_rows = list(result.scalars().all())
                if not failed_rows:
                    raise NothingToRetryError("No failed generations to retry")

                now = utcnow()
                for row in failed_rows:
                    row.status = RowStatus.PENDING
                    row.admitted_at = now
                    row.error_kind = None
                    row.error_message = None
                    row.reservation_id = None
                    row.credits_reserved = None
                    row.credits_charged = None
                    row.started_at = None
                    row.completed_at = None
                    for unit in row.units:
                        unit.status = RowStatus.PENDING
                        unit.provider_job_id = None
                        unit.output_ref = None
                        unit.rendered_duration_seconds = None
                        unit.attempts = 0
                        unit.error_kind = None
                        unit.error_message = None
                        unit.started_at = None
                        unit.completed_at = None

                batch.status = BatchStatus.RUNNING
                batch.finished_at = None
                await db.commit()
                row_ids = [row.id for row in failed_rows]

        log.info("batch_retry_started", batch_id=str(batch_id), rows=len(row_ids))
        await self._state_machine.dispatch(batch_id, row_ids)
        return len(row_ids)

    async def abort(self, batch_id: uuid.UUID) -> AbortSummary:
        """Cancel a batch and release every credit held for its unfinished rows.

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateTransitionError: If the batch already settled or was
                already cancelled
        """
        async with self._state_machine.lock(batch_id):
            async with self._session_factory() as db:
                batch = await self._state_machine.load_batch(db, batch_id)
                if batch.status not in ABORTABLE_BATCH_STATUSES:
                    raise InvalidStateTransitionError(
                        f"Batch cannot be aborted from {batch.status.value}",
                        from_status=batch.status,
                        to_status=BatchStatus.CANCELLED,
                    )

                result = await db.execute(
                    select(BatchRow)
                    .where(
                        BatchRow.batch_id == batch_id,
                        BatchRow.status.in_([RowStatus.PENDING, RowStatus.IN_PROGRESS]),
                    )
                    .options(selectinload(BatchRow.units))
                )
                open_rows = list(result.scalars().all())

                now = utcnow()
                reservation_ids: list[uuid.UUID] = []
                job_ids: list[str] = []
                for row in open_rows:
                    if row.reservation_id is not None:
                        reservation_ids.append(row.reservation_id)
                    for unit in row.units:
                        if unit.status == RowStatus.IN_PROGRESS:
                            if unit.provider_job_id:
                                job_ids.append(unit.provider_job_id)
                            unit.status = RowStatus.FAILED
                            unit.error_kind = ErrorKind.CANCELLED
                            unit.error_message = ABORT_MESSAGE
                            unit.completed_at = now
                    row.status = RowStatus.FAILED
                    row.error_kind = ErrorKind.CANCELLED
                    row.error_message = ABORT_MESSAGE
                    row.completed_at = now

                batch.status = BatchStatus.CANCELLED
                batch.finished_at = now
                await db.commit()

            # Row writes are committed first so the ledger's own transactions
            # never wait on this session
            for reservation_id in reservation_ids:
                await self._ledger.refund(reservation_id)

        cancelled_jobs = 0
        for job_id in job_ids:
            try:
                if await self._provider.cancel(job_id):
                    cancelled_jobs += 1
            except Exception as e:
                log.warning("provider_cancel_failed", job_id=job_id, error=str(e))

        summary = AbortSummary(
            batch_id=batch_id,
            rows_cancelled=len(open_rows),
            reservations_refunded=len(reservation_ids),
            provider_jobs_cancelled=cancelled_jobs,
        )
        log.info(
            "batch_aborted",
            batch_id=str(batch_id),
            rows_cancelled=summary.rows_cancelled,
            reservations_refunded=summary.reservations_refunded,
            provider_jobs_cancelled=summary.provider_jobs_cancelled,
        )
        return summary

    async def recover_inflight(self) -> int:
        """Re-dispatch admitted, unresolved rows of executing batches.

        Called once at startup, before new work is accepted.

        Returns:
            Number of rows re-dispatched.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(BatchRow.batch_id, BatchRow.id)
                .join(Batch, Batch.id == BatchRow.batch_id)
                .where(
                    Batch.status.in_(list(EXECUTING_BATCH_STATUSES)),
                    BatchRow.admitted_at.is_not(None),
                    BatchRow.status.in_([RowStatus.PENDING, RowStatus.IN_PROGRESS]),
                )
                .order_by(Batch.created_at, BatchRow.ordinal)
            )
            pending = result.all()

            batch_ids = (
                await db.execute(
                    select(Batch.id).where(Batch.status.in_(list(EXECUTING_BATCH_STATUSES)))
                )
            ).scalars().all()

        for batch_id, row_id in pending:
            await self._state_machine.dispatch(batch_id, [row_id])

        # Batches whose last row settled right before a crash
        for batch_id in batch_ids:
            await self._state_machine.settle(batch_id)

        if pending:
            log.info("inflight_rows_recovered", rows=len(pending))
        return len(pending)
