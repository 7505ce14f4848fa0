"""Row executor: drives one row from pending to a terminal state.

Execution Flow:
    1. Claim the row (pending → in_progress)
    2. Reserve credits for the row's estimated duration
       (InsufficientBalanceError → failed / CREDIT_EXHAUSTED, no provider call)
    3. Render units strictly in ordinal order: submit, then wait for the job
       by polling with a callback fast-path, bounded by UNIT_TIMEOUT_SECONDS
    4. All units completed → debit actual credits, row completed
       Any unit failed terminally → refund, row failed

Retry Policy (tenacity, per unit):
    RATE_LIMITED, PROVIDER_ERROR → up to MAX_UNIT_ATTEMPTS with exponential backoff
    TIMEOUT → retried once
    CREDIT_EXHAUSTED, AUTH_ERROR, INVALID_PARAMS → fail immediately

Cancellation:
    Every row/unit transition runs under the batch lock and re-checks that the
    batch is not cancelled and the row is still in progress. If it is, the
    transition is skipped, the late result is discarded, the reservation is
    refunded (idempotent) and the provider job is cancelled best-effort.

Resumability:
    A row found already in_progress (process restarted mid-row) keeps its
    reservation and completed units, and resumes waiting on the job of the
    unit that was in flight.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, wait_exponential

from bulkgen.config import OrchestratorSettings
from bulkgen.constants import MAX_ERROR_MESSAGE_LENGTH, RETRYABLE_ERROR_ATTEMPTS
from bulkgen.exceptions import ErrorKind, InsufficientBalanceError
from bulkgen.models import (
    EXECUTING_BATCH_STATUSES,
    Batch,
    BatchRow,
    BatchStatus,
    RowStatus,
    RowUnit,
    TERMINAL_ROW_STATUSES,
    utcnow,
)
from bulkgen.providers.base import (
    ProviderError,
    ProviderJobState,
    ProviderJobStatus,
    RenderingProvider,
    UnitRenderRequest,
)
from bulkgen.services.batch_state_machine import BatchStateMachine
from bulkgen.services.credit_ledger import CreditLedger
from bulkgen.services.pricing import actual_row_credits, estimate_row_credits
from bulkgen.utils.alerts import send_alert, should_send_alert
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)


class RowCancelled(Exception):
    """The batch was aborted (or the row settled elsewhere) mid-execution."""


class UnitAttemptError(Exception):
    """One attempt at rendering a unit failed with a classified kind."""

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        super().__init__(message)


class UnitFailed(Exception):
    """A unit failed terminally; retries (if any) are exhausted."""

    def __init__(self, kind: ErrorKind, message: str, unit_id: uuid.UUID):
        self.kind = kind
        self.message = message
        self.unit_id = unit_id
        super().__init__(message)


class JobWaiter:
    """Callback fast-path for provider jobs.

    The executor registers a future per job it is waiting on; a provider
    callback delivered through deliver() resolves it so the executor does not
    have to wait for its next poll.
    """

    def __init__(self) -> None:
        self._futures: dict[str, asyncio.Future[ProviderJobStatus]] = {}

    def register(self, job_id: str) -> asyncio.Future[ProviderJobStatus]:
        future = self._futures.get(job_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._futures[job_id] = future
        return future

    def deliver(self, status: ProviderJobStatus) -> bool:
        """Hand a terminal job status to its waiter.

        Returns:
            True if an executor was waiting on the job.
        """
        if not status.state.is_terminal:
            return False
        future = self._futures.get(status.job_id)
        if future is None or future.done():
            return False
        future.set_result(status)
        return True

    def discard(self, job_id: str) -> None:
        future = self._futures.pop(job_id, None)
        if future is not None and not future.done():
            future.cancel()

    @property
    def waiting(self) -> int:
        return len(self._futures)


@dataclass
class _UnitState:
    id: uuid.UUID
    ordinal: int
    prompt: str
    duration_seconds: int | None
    status: RowStatus
    provider_job_id: str | None


@dataclass
class _RowContext:
    batch_id: uuid.UUID
    row_id: uuid.UUID
    owner_id: str
    options: dict[str, Any]
    default_unit_seconds: int
    units: list[_UnitState] = field(default_factory=list)
    reservation_id: uuid.UUID | None = None
    active_job_id: str | None = None

    def unit_seconds(self, unit: _UnitState) -> int:
        return unit.duration_seconds or self.default_unit_seconds


def _truncate(message: str | None) -> str:
    text = message or "Unknown error"
    return text[:MAX_ERROR_MESSAGE_LENGTH]


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UnitAttemptError) and exc.kind in RETRYABLE_ERROR_ATTEMPTS


class RowExecutor:
    """Executes rows admitted by the batch state machine.

    Instances are shared by every worker of the pool; all per-row state lives
    in a _RowContext local to execute().
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        provider: RenderingProvider,
        state_machine: BatchStateMachine,
        settings: OrchestratorSettings,
        waiter: JobWaiter | None = None,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._provider = provider
        self._state_machine = state_machine
        self._settings = settings
        self.waiter = waiter or JobWaiter()

    async def execute(self, batch_id: uuid.UUID, row_id: uuid.UUID) -> None:
        """Drive one row to completed or failed. Never raises for row failures."""
        ctx = await self._claim(batch_id, row_id)
        if ctx is None:
            return

        try:
            if ctx.reservation_id is None and not await self._reserve(ctx):
                return
            for unit in ctx.units:
                if unit.status == RowStatus.COMPLETED:
                    continue
                await self._run_unit(ctx, unit)
            await self._complete(ctx)
        except RowCancelled:
            await self._discard(ctx)
        except UnitFailed as e:
            await self._fail(ctx, e.kind, e.message, unit_id=e.unit_id)
        except Exception as e:
            log.exception(
                "row_execution_error",
                batch_id=str(batch_id),
                row_id=str(row_id),
                error=str(e),
            )
            await self._fail(ctx, ErrorKind.PROVIDER_ERROR, f"Unexpected error: {e}")

    @asynccontextmanager
    async def _transition(
        self, ctx: _RowContext
    ) -> AsyncIterator[tuple[AsyncSession, Batch, BatchRow]]:
        """Open a locked, cancellation-checked transaction for a row transition.

        Raises:
            RowCancelled: If the batch was cancelled or the row is no longer
                in progress; nothing is written in that case.
        """
        async with self._state_machine.lock(ctx.batch_id):
            async with self._session_factory() as db:
                batch = await db.get(Batch, ctx.batch_id)
                row = await db.get(BatchRow, ctx.row_id)
                if (
                    batch is None
                    or row is None
                    or batch.status == BatchStatus.CANCELLED
                    or row.status != RowStatus.IN_PROGRESS
                ):
                    raise RowCancelled()
                yield db, batch, row
                await db.commit()

    async def _is_cancelled(self, ctx: _RowContext) -> bool:
        async with self._session_factory() as db:
            batch = await db.get(Batch, ctx.batch_id)
            row = await db.get(BatchRow, ctx.row_id)
        return (
            batch is None
            or row is None
            or batch.status == BatchStatus.CANCELLED
            or row.status != RowStatus.IN_PROGRESS
        )

    async def _claim(self, batch_id: uuid.UUID, row_id: uuid.UUID) -> _RowContext | None:
        async with self._state_machine.lock(batch_id):
            async with self._session_factory() as db:
                batch = await db.get(Batch, batch_id)
                row = await db.get(BatchRow, row_id, options=[selectinload(BatchRow.units)])
                if batch is None or row is None:
                    log.warning("row_claim_missing", batch_id=str(batch_id), row_id=str(row_id))
                    return None
                if batch.status not in EXECUTING_BATCH_STATUSES:
                    log.info(
                        "row_claim_skipped",
                        batch_id=str(batch_id),
                        row_id=str(row_id),
                        batch_status=batch.status.value,
                    )
                    return None
                if row.status in TERMINAL_ROW_STATUSES:
                    return None

                resumed = row.status == RowStatus.IN_PROGRESS
                if not resumed:
                    row.status = RowStatus.IN_PROGRESS
                    row.started_at = utcnow()

                base_config = batch.base_config or {}
                ctx = _RowContext(
                    batch_id=batch_id,
                    row_id=row_id,
                    owner_id=batch.owner_id,
                    options={**base_config, **(row.payload or {})},
                    default_unit_seconds=(
                        base_config.get("unit_duration_seconds")
                        or self._settings.default_unit_seconds
                    ),
                    units=[
                        _UnitState(
                            id=unit.id,
                            ordinal=unit.ordinal,
                            prompt=unit.prompt,
                            duration_seconds=unit.duration_seconds,
                            status=unit.status,
                            provider_job_id=unit.provider_job_id,
                        )
                        for unit in sorted(row.units, key=lambda u: u.ordinal)
                    ],
                    reservation_id=row.reservation_id,
                )
                await db.commit()

        log.info(
            "row_claimed",
            batch_id=str(batch_id),
            row_id=str(row_id),
            units=len(ctx.units),
            resumed=resumed,
        )
        return ctx

    async def _reserve(self, ctx: _RowContext) -> bool:
        credits = estimate_row_credits(
            [unit.duration_seconds for unit in ctx.units],
            ctx.default_unit_seconds,
            self._settings.credits_per_minute,
        )
        try:
            reservation = await self._ledger.active_reservation_for_row(ctx.row_id)
            if reservation is not None:
                log.info(
                    "reservation_adopted",
                    row_id=str(ctx.row_id),
                    reservation_id=str(reservation.id),
                    amount=reservation.amount,
                )
            else:
                reservation = await self._ledger.reserve(
                    ctx.owner_id, credits, batch_id=ctx.batch_id, row_id=ctx.row_id
                )
        except InsufficientBalanceError as e:
            await self._fail(ctx, ErrorKind.CREDIT_EXHAUSTED, str(e))
            return False
        except SQLAlchemyError as e:
            log.error("credit_reservation_error", row_id=str(ctx.row_id), error=str(e))
            await self._fail(ctx, ErrorKind.PROVIDER_ERROR, f"Credit reservation failed: {e}")
            return False

        ctx.reservation_id = reservation.id
        async with self._transition(ctx) as (db, batch, row):
            row.reservation_id = reservation.id
            row.credits_reserved = reservation.amount
            row.credits_charged = None
        return True

    def _build_request(self, ctx: _RowContext, unit: _UnitState) -> UnitRenderRequest:
        return UnitRenderRequest(
            batch_id=ctx.batch_id,
            row_id=ctx.row_id,
            unit_id=unit.id,
            ordinal=unit.ordinal,
            prompt=unit.prompt,
            duration_seconds=ctx.unit_seconds(unit),
            options=dict(ctx.options),
        )

    def _stop_after_kind_limit(self, retry_state: RetryCallState) -> bool:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        kind = getattr(exc, "kind", None)
        limit = RETRYABLE_ERROR_ATTEMPTS.get(kind) or self._settings.max_unit_attempts
        return retry_state.attempt_number >= limit

    async def _run_unit(self, ctx: _RowContext, unit: _UnitState) -> None:
        # A unit left in flight by a previous process resumes on its job
        resume_job_id = unit.provider_job_id if unit.status == RowStatus.IN_PROGRESS else None
        result: ProviderJobStatus | None = None

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            log.warning(
                "unit_attempt_retry",
                batch_id=str(ctx.batch_id),
                row_id=str(ctx.row_id),
                unit_ordinal=unit.ordinal,
                attempt=retry_state.attempt_number,
                error_kind=exc.kind.value,
                error=str(exc)[:200],
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=self._stop_after_kind_limit,
            wait=wait_exponential(
                multiplier=self._settings.retry_backoff_seconds,
                max=self._settings.retry_backoff_max_seconds,
            ),
            before_sleep=_before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    job_id, resume_job_id = resume_job_id, None
                    result = await self._attempt_unit(ctx, unit, job_id)
        except UnitAttemptError as e:
            raise UnitFailed(e.kind, _truncate(str(e)), unit.id) from e

        async with self._transition(ctx) as (db, batch, row):
            db_unit = await db.get(RowUnit, unit.id)
            db_unit.status = RowStatus.COMPLETED
            db_unit.output_ref = result.output_ref
            db_unit.rendered_duration_seconds = result.duration_seconds
            db_unit.error_kind = None
            db_unit.error_message = None
            db_unit.completed_at = utcnow()
        unit.status = RowStatus.COMPLETED
        ctx.active_job_id = None
        log.info(
            "unit_completed",
            batch_id=str(ctx.batch_id),
            row_id=str(ctx.row_id),
            unit_ordinal=unit.ordinal,
            output_ref=result.output_ref,
        )

    async def _attempt_unit(
        self, ctx: _RowContext, unit: _UnitState, job_id: str | None
    ) -> ProviderJobStatus:
        if job_id is None:
            async with self._transition(ctx) as (db, batch, row):
                db_unit = await db.get(RowUnit, unit.id)
                db_unit.status = RowStatus.IN_PROGRESS
                db_unit.attempts += 1
                db_unit.provider_job_id = None
                db_unit.started_at = db_unit.started_at or utcnow()
            unit.status = RowStatus.IN_PROGRESS

            try:
                job_id = await self._provider.submit(self._build_request(ctx, unit))
            except ProviderError as e:
                raise UnitAttemptError(e.kind, str(e)) from e
            except Exception as e:
                log.exception("provider_submit_unexpected_error", row_id=str(ctx.row_id))
                raise UnitAttemptError(ErrorKind.PROVIDER_ERROR, f"Provider submit failed: {e}") from e

            ctx.active_job_id = job_id
            async with self._transition(ctx) as (db, batch, row):
                db_unit = await db.get(RowUnit, unit.id)
                db_unit.provider_job_id = job_id
            unit.provider_job_id = job_id
            log.info(
                "unit_submitted",
                batch_id=str(ctx.batch_id),
                row_id=str(ctx.row_id),
                unit_ordinal=unit.ordinal,
                job_id=job_id,
                provider=self._provider.name,
            )
        else:
            ctx.active_job_id = job_id
            log.info("unit_resumed", row_id=str(ctx.row_id), unit_ordinal=unit.ordinal, job_id=job_id)

        status = await self._await_job(ctx, job_id)
        if status.state == ProviderJobState.FAILED:
            raise UnitAttemptError(
                status.error_kind or ErrorKind.PROVIDER_ERROR,
                status.error_message or "Provider job failed",
            )
        return status

    async def _await_job(self, ctx: _RowContext, job_id: str) -> ProviderJobStatus:
        """Wait for a job to settle without blocking other rows.

        Polls every POLL_INTERVAL_SECONDS; a callback delivered through the
        JobWaiter ends the wait early. Transient poll failures (RATE_LIMITED,
        PROVIDER_ERROR, and any unclassified exception) are tolerated until
        the unit timeout.

        Raises:
            UnitAttemptError: TIMEOUT, or a fatal poll error
            RowCancelled: If the batch was aborted while waiting
        """
        loop = asyncio.get_running_loop()
        timeout = self._settings.unit_timeout_seconds
        deadline = loop.time() + timeout
        future = self.waiter.register(job_id)
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise UnitAttemptError(
                        ErrorKind.TIMEOUT, f"Unit did not finish within {timeout:g}s"
                    )
                try:
                    return await asyncio.wait_for(
                        asyncio.shield(future),
                        timeout=min(self._settings.poll_interval_seconds, remaining),
                    )
                except asyncio.TimeoutError:
                    pass

                if await self._is_cancelled(ctx):
                    await self._cancel_job(job_id)
                    raise RowCancelled()

                try:
                    status = await self._provider.poll(job_id)
                except ProviderError as e:
                    if e.kind in (ErrorKind.RATE_LIMITED, ErrorKind.PROVIDER_ERROR):
                        log.warning("unit_poll_error", job_id=job_id, error_kind=e.kind.value, error=str(e)[:200])
                        continue
                    raise UnitAttemptError(e.kind, str(e)) from e
                except Exception as e:
                    # Unclassified failures count as PROVIDER_ERROR, which is transient
                    log.warning(
                        "unit_poll_unexpected_error",
                        job_id=job_id,
                        error_kind=ErrorKind.PROVIDER_ERROR.value,
                        error_type=type(e).__name__,
                        error=str(e)[:200],
                    )
                    continue
                if status.state.is_terminal:
                    return status
        finally:
            self.waiter.discard(job_id)

    async def _complete(self, ctx: _RowContext) -> None:
        async with self._transition(ctx) as (db, batch, row):
            # Read units before any write so the ledger can commit independently
            units = [
                await db.get(RowUnit, unit.id)
                for unit in ctx.units
            ]
            charge = actual_row_credits(
                [(unit.duration_seconds or ctx.default_unit_seconds, unit.rendered_duration_seconds) for unit in units],
                ctx.default_unit_seconds,
                self._settings.credits_per_minute,
            )
            reservation = await self._ledger.debit(ctx.reservation_id, charge)
            row.status = RowStatus.COMPLETED
            row.credits_charged = reservation.credits_charged
            row.error_kind = None
            row.error_message = None
            row.completed_at = utcnow()
            await self._state_machine.apply_settlement(db, batch)

        log.info(
            "row_completed",
            batch_id=str(ctx.batch_id),
            row_id=str(ctx.row_id),
            credits_charged=reservation.credits_charged,
            credits_reserved=reservation.amount,
        )

    async def _fail(
        self,
        ctx: _RowContext,
        kind: ErrorKind,
        message: str,
        unit_id: uuid.UUID | None = None,
    ) -> None:
        message = _truncate(message)
        try:
            async with self._transition(ctx) as (db, batch, row):
                if ctx.reservation_id is not None:
                    await self._ledger.refund(ctx.reservation_id)
                if unit_id is not None:
                    db_unit = await db.get(RowUnit, unit_id)
                    if db_unit.status not in TERMINAL_ROW_STATUSES:
                        db_unit.status = RowStatus.FAILED
                        db_unit.error_kind = kind
                        db_unit.error_message = message
                        db_unit.completed_at = utcnow()
                row.status = RowStatus.FAILED
                row.error_kind = kind
                row.error_message = message
                row.completed_at = utcnow()
                await self._state_machine.apply_settlement(db, batch)
        except RowCancelled:
            await self._discard(ctx)
            return

        log.warning(
            "row_failed",
            batch_id=str(ctx.batch_id),
            row_id=str(ctx.row_id),
            error_kind=kind.value,
            error=message[:200],
        )
        if kind == ErrorKind.AUTH_ERROR and should_send_alert(self._provider.name, "CRITICAL"):
            await send_alert(
                level="CRITICAL",
                message=f"Rendering provider {self._provider.name} rejected our credentials",
                details={
                    "batch_id": str(ctx.batch_id),
                    "row_id": str(ctx.row_id),
                    "error": message[:500],
                },
            )

    async def _discard(self, ctx: _RowContext) -> None:
        """Drop a cancelled row's late work: refund and cancel the provider job."""
        if ctx.reservation_id is not None:
            await self._ledger.refund(ctx.reservation_id)
        if ctx.active_job_id is not None:
            await self._cancel_job(ctx.active_job_id)
        log.info("row_result_discarded", batch_id=str(ctx.batch_id), row_id=str(ctx.row_id))

    async def _cancel_job(self, job_id: str) -> None:
        try:
            cancelled = await self._provider.cancel(job_id)
        except Exception as e:
            log.warning("provider_cancel_failed", job_id=job_id, error=str(e))
            return
        log.info("provider_cancel_requested", job_id=job_id, acknowledged=cancelled)
