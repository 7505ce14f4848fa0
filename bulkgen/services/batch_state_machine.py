"""Batch lifecycle, staged rollout and admission control.

The state machine owns every batch-level transition:

    draft → test_running → paused_for_review → running → completed|partially_failed
    draft → running (full launch)
    any non-terminal → cancelled (see RecoveryController.abort)

Architecture Pattern:
    - One asyncio.Lock per batch serialises launch/resume/settle/abort and
      every row transition the executor applies, so a late provider result
      can never race an abort. Locks are dropped once nothing holds them
    - Short Transaction Pattern: each operation opens a session, applies the
      transition, commits, closes. Rows are handed to the row dispatcher
      only after the admission commit is durable
    - Counts are recomputed from row states on every settlement, never
      hand-maintained
"""

import uuid
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from bulkgen.config import OrchestratorSettings
from bulkgen.constants import ERROR_USER_ACTIONS
from bulkgen.exceptions import BatchNotFoundError, InvalidBatchError, InvalidStateTransitionError
from bulkgen.models import (
    Batch,
    BatchRow,
    BatchStatus,
    RowStatus,
    RowUnit,
    utcnow,
)
from bulkgen.schemas.batch import (
    BaseConfig,
    BatchStatusResponse,
    RowCounts,
    RowSpec,
    RowSummary,
    StitchInfo,
    UnitSummary,
)
from bulkgen.utils.locks import KeyedLocks
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

Dispatch = Callable[[uuid.UUID, uuid.UUID], Awaitable[None]]


@dataclass(frozen=True)
class RowCountSnapshot:
    """Row counts for one batch at one instant."""

    total: int
    pending: int
    in_progress: int
    completed: int
    failed: int

    @property
    def unresolved(self) -> int:
        return self.pending + self.in_progress


def _normalise_rows(rows: Sequence[RowSpec | dict]) -> list[RowSpec]:
    if not rows:
        raise InvalidBatchError("A batch needs at least one row")
    try:
        return [row if isinstance(row, RowSpec) else RowSpec.model_validate(row) for row in rows]
    except ValidationError as e:
        raise InvalidBatchError(f"Invalid row spec: {e}") from e


def _normalise_base_config(base_config: BaseConfig | dict | None) -> dict:
    if base_config is None:
        return {}
    try:
        config = (
            base_config
            if isinstance(base_config, BaseConfig)
            else BaseConfig.model_validate(base_config)
        )
    except ValidationError as e:
        raise InvalidBatchError(f"Invalid base config: {e}") from e
    return config.model_dump(exclude_none=True)


class BatchStateMachine:
    """Owns batch status, staged rollout and row admission.

    Example:
        >>> machine = BatchStateMachine(session_factory, settings, dispatch=dispatcher.submit)
        >>> batch_id = await machine.launch("user-1", rows, {"model": "veo3_fast"}, staged=True)
        >>> await machine.resume(batch_id)  # once paused_for_review
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: OrchestratorSettings,
        dispatch: Dispatch,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._dispatch = dispatch
        self._locks = KeyedLocks()

    def lock(self, batch_id: uuid.UUID) -> AbstractAsyncContextManager[None]:
        """Per-batch lock; hold it for any transition touching the batch or its rows."""
        return self._locks.hold(batch_id)

    @property
    def held_locks(self) -> int:
        return len(self._locks)

    async def dispatch(self, batch_id: uuid.UUID, row_ids: Sequence[uuid.UUID]) -> None:
        """Hand admitted rows to the row dispatcher, in the order given."""
        for row_id in row_ids:
            await self._dispatch(batch_id, row_id)

    async def load_batch(self, db: AsyncSession, batch_id: uuid.UUID) -> Batch:
        batch = await db.get(Batch, batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return batch

    async def count_rows(self, db: AsyncSession, batch_id: uuid.UUID) -> RowCountSnapshot:
        """Recompute row counts from row states."""
        result = await db.execute(
            select(BatchRow.status, func.count(BatchRow.id))
            .where(BatchRow.batch_id == batch_id)
            .group_by(BatchRow.status)
        )
        by_status = {status: count for status, count in result.all()}
        return RowCountSnapshot(
            total=sum(by_status.values()),
            pending=by_status.get(RowStatus.PENDING, 0),
            in_progress=by_status.get(RowStatus.IN_PROGRESS, 0),
            completed=by_status.get(RowStatus.COMPLETED, 0),
            failed=by_status.get(RowStatus.FAILED, 0),
        )

    async def launch(
        self,
        owner_id: str,
        rows: Sequence[RowSpec | dict],
        base_config: BaseConfig | dict | None = None,
        staged: bool = True,
        name: str | None = None,
    ) -> uuid.UUID:
        """Create a batch with all its rows and admit the first wave.

        Staged launches admit the first ``test_run_size`` rows by ordinal and
        enter test_running. A staged batch no larger than the test run has
        nothing to review afterwards, so it launches as a full run.

        Raises:
            InvalidBatchError: If rows are missing or malformed
        """
        if not owner_id:
            raise InvalidBatchError("owner_id is required")
        specs = _normalise_rows(rows)
        config = _normalise_base_config(base_config)
        test_run_size = self._settings.test_run_size
        test_run = staged and len(specs) > test_run_size

        async with self._session_factory() as db:
            batch = Batch(
                owner_id=owner_id,
                name=name or f"Batch {utcnow():%Y-%m-%d %H:%M}",
                base_config=config,
                status=BatchStatus.DRAFT,
                staged=staged,
                total_rows=len(specs),
                test_run_size=test_run_size if test_run else 0,
            )
            db.add(batch)
            batch_rows: list[BatchRow] = []
            for ordinal, spec in enumerate(specs):
                row = BatchRow(
                    batch=batch,
                    ordinal=ordinal,
                    payload=spec.payload(),
                    status=RowStatus.PENDING,
                    units=[
                        RowUnit(
                            ordinal=unit_ordinal,
                            prompt=unit.prompt,
                            duration_seconds=unit.duration_seconds,
                            status=RowStatus.PENDING,
                        )
                        for unit_ordinal, unit in enumerate(spec.units)
                    ],
                )
                batch_rows.append(row)
            db.add_all(batch_rows)
            await db.flush()

            if test_run:
                admitted = batch_rows[:test_run_size]
                for row in admitted:
                    row.is_test_run = True
                batch.status = BatchStatus.TEST_RUNNING
            else:
                admitted = batch_rows
                batch.status = BatchStatus.RUNNING

            now = utcnow()
            for row in admitted:
                row.admitted_at = now
            await db.commit()
            batch_id = batch.id
            admitted_ids = [row.id for row in admitted]

        log.info(
            "batch_launched",
            batch_id=str(batch_id),
            owner_id=owner_id,
            total_rows=len(specs),
            staged=staged,
            test_run=test_run,
            admitted=len(admitted_ids),
        )
        await self.dispatch(batch_id, admitted_ids)
        return batch_id

    async def resume(self, batch_id: uuid.UUID) -> int:
        """Approve a paused test run and admit every remaining pending row.

        Returns:
            Number of rows admitted.

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateTransitionError: If the batch is not paused_for_review
        """
        async with self.lock(batch_id):
            async with self._session_factory() as db:
                batch = await self.load_batch(db, batch_id)
                if batch.status != BatchStatus.PAUSED_FOR_REVIEW:
                    raise InvalidStateTransitionError(
                        f"Batch can only be resumed from paused_for_review, not {batch.status.value}",
                        from_status=batch.status,
                        to_status=BatchStatus.RUNNING,
                    )

                result = await db.execute(
                    select(BatchRow)
                    .where(BatchRow.batch_id == batch_id, BatchRow.status == RowStatus.PENDING)
                    .order_by(BatchRow.ordinal)
                )
                pending_rows = list(result.scalars().all())
                batch.status = BatchStatus.RUNNING
                batch.paused_at = None
                now = utcnow()
                for row in pending_rows:
                    row.admitted_at = now
                await self.apply_settlement(db, batch)
                await db.commit()
                admitted_ids = [row.id for row in pending_rows]

        log.info("batch_resumed", batch_id=str(batch_id), admitted=len(admitted_ids))
        await self.dispatch(batch_id, admitted_ids)
        return len(admitted_ids)

    async def apply_settlement(self, db: AsyncSession, batch: Batch) -> BatchStatus:
        """Advance the batch if its admitted rows have all settled.

        Caller must hold ``lock(batch.id)`` and commit the session.

        Transitions:
            test_running → paused_for_review once every test-run row is terminal
            running → completed | partially_failed once no row is pending or in progress
        """
        await db.flush()
        if batch.status == BatchStatus.TEST_RUNNING:
            unresolved = await db.scalar(
                select(func.count(BatchRow.id)).where(
                    BatchRow.batch_id == batch.id,
                    BatchRow.is_test_run.is_(True),
                    BatchRow.status.in_([RowStatus.PENDING, RowStatus.IN_PROGRESS]),
                )
            )
            if unresolved == 0:
                batch.status = BatchStatus.PAUSED_FOR_REVIEW
                batch.paused_at = utcnow()
                counts = await self.count_rows(db, batch.id)
                log.info(
                    "batch_paused_for_review",
                    batch_id=str(batch.id),
                    completed=counts.completed,
                    failed=counts.failed,
                    pending=counts.pending,
                )
        elif batch.status == BatchStatus.RUNNING:
            counts = await self.count_rows(db, batch.id)
            if counts.unresolved == 0:
                batch.status = (
                    BatchStatus.COMPLETED if counts.failed == 0 else BatchStatus.PARTIALLY_FAILED
                )
                batch.finished_at = utcnow()
                log.info(
                    "batch_settled",
                    batch_id=str(batch.id),
                    status=batch.status.value,
                    completed=counts.completed,
                    failed=counts.failed,
                )
        return batch.status

    async def settle(self, batch_id: uuid.UUID) -> BatchStatus:
        """Lock, re-evaluate and persist the batch status."""
        async with self.lock(batch_id):
            async with self._session_factory() as db:
                batch = await self.load_batch(db, batch_id)
                status = await self.apply_settlement(db, batch)
                await db.commit()
        return status

    async def get_status(self, batch_id: uuid.UUID) -> BatchStatusResponse:
        """Read the latest persisted state of a batch.

        Takes no lock: a status query never waits on in-flight work.
        """
        async with self._session_factory() as db:
            batch = await self.load_batch(db, batch_id)
            result = await db.execute(
                select(BatchRow)
                .where(BatchRow.batch_id == batch_id)
                .options(selectinload(BatchRow.units))
                .order_by(BatchRow.ordinal)
            )
            rows = list(result.scalars().all())

        counts = RowCounts(total=batch.total_rows)
        summaries: list[RowSummary] = []
        total_charged = 0
        for row in rows:
            setattr(counts, row.status.value, getattr(counts, row.status.value) + 1)
            if row.status == RowStatus.COMPLETED and row.credits_charged:
                total_charged += row.credits_charged
            units = sorted(row.units, key=lambda unit: unit.ordinal)
            summaries.append(
                RowSummary(
                    id=row.id,
                    ordinal=row.ordinal,
                    status=row.status,
                    is_test_run=row.is_test_run,
                    admitted=row.admitted_at is not None,
                    error_kind=row.error_kind,
                    error_message=row.error_message,
                    user_action=ERROR_USER_ACTIONS.get(row.error_kind) if row.error_kind else None,
                    credits_reserved=row.credits_reserved,
                    credits_charged=row.credits_charged,
                    units_completed=sum(1 for unit in units if unit.status == RowStatus.COMPLETED),
                    units_total=len(units),
                    units=[UnitSummary.model_validate(unit) for unit in units],
                    stitch=StitchInfo(
                        status=row.stitch_status,
                        artifact_ref=row.stitched_artifact_ref,
                        error=row.stitch_error,
                        stitched_at=row.stitched_at,
                    ),
                )
            )

        return BatchStatusResponse(
            id=batch.id,
            owner_id=batch.owner_id,
            name=batch.name,
            status=batch.status,
            staged=batch.staged,
            test_run_size=batch.test_run_size,
            counts=counts,
            total_credits_charged=total_charged,
            rows=summaries,
            stitch=StitchInfo(
                status=batch.stitch_status,
                artifact_ref=batch.stitched_artifact_ref,
                error=batch.stitch_error,
                stitched_at=batch.stitched_at,
            ),
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )
