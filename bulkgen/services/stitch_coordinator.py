"""Stitch coordinator: combine completed outputs into one artifact.

Granularities:
    - Row: the row's completed units, in unit ordinal order
    - Batch: the batch's completed rows, in row ordinal order; each row
      contributes its row-level artifact when one exists, else its unit
      outputs in order

Gating (synchronous rejections, no state change):
    - STITCH_IN_PROGRESS: the target is already stitching
    - ALREADY_STITCHED: an artifact exists and force is not set
    - INSUFFICIENT_INPUTS: fewer than 2 completed inputs

State:
    idle|failed|completed(forced) → stitching → completed|failed

The stitching status is committed before the backend is called, and the
backend runs outside the batch lock so a slow stitch never blocks row
execution. A stitch interrupted by cancellation is recorded as failed, so
the target never stays stuck in stitching.
"""

import asyncio
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from bulkgen.constants import MAX_ERROR_MESSAGE_LENGTH, MIN_STITCH_INPUTS
from bulkgen.exceptions import (
    ConfigurationError,
    RowNotFoundError,
    StitchRejectedError,
    StitchRejectionKind,
)
from bulkgen.models import Batch, BatchRow, RowStatus, StitchStatus, utcnow
from bulkgen.schemas.batch import StitchResponse
from bulkgen.services.batch_state_machine import BatchStateMachine
from bulkgen.stitchers.base import StitchError, Stitcher
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

StitchTarget = Batch | BatchRow

INTERRUPTED_MESSAGE = "Stitch was interrupted before it finished"


def _check_gates(target: StitchTarget, input_count: int, force: bool) -> None:
    if target.stitch_status == StitchStatus.STITCHING:
        raise StitchRejectedError(
            StitchRejectionKind.STITCH_IN_PROGRESS, "A stitch is already in progress."
        )
    if target.stitched_artifact_ref and not force:
        raise StitchRejectedError(
            StitchRejectionKind.ALREADY_STITCHED,
            "Already stitched. Pass force=true to stitch again.",
        )
    if input_count < MIN_STITCH_INPUTS:
        raise StitchRejectedError(
            StitchRejectionKind.INSUFFICIENT_INPUTS,
            f"Need at least {MIN_STITCH_INPUTS} completed videos to stitch. Found {input_count}.",
        )


def _row_unit_outputs(row: BatchRow) -> list[str]:
    return [
        unit.output_ref
        for unit in sorted(row.units, key=lambda u: u.ordinal)
        if unit.status == RowStatus.COMPLETED and unit.output_ref
    ]


class StitchCoordinator:
    """Row- and batch-level stitching with idempotency gates."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: BatchStateMachine,
        stitcher: Stitcher | None,
    ):
        self._session_factory = session_factory
        self._state_machine = state_machine
        self._stitcher = stitcher

    def _require_stitcher(self) -> Stitcher:
        if self._stitcher is None:
            raise ConfigurationError(
                "Stitching is not configured (set CLOUDINARY_CLOUD_NAME, "
                "CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET)"
            )
        return self._stitcher

    async def stitch_batch(self, batch_id: uuid.UUID, force: bool = False) -> StitchResponse:
        """Stitch every completed row of a batch into one artifact.

        Raises:
            BatchNotFoundError: If the batch does not exist
            StitchRejectedError: If a gate rejects the request
            ConfigurationError: If no stitching backend is configured
        """
        stitcher = self._require_stitcher()
        async with self._state_machine.lock(batch_id):
            async with self._session_factory() as db:
                batch = await self._state_machine.load_batch(db, batch_id)
                result = await db.execute(
                    select(BatchRow)
                    .where(BatchRow.batch_id == batch_id, BatchRow.status == RowStatus.COMPLETED)
                    .options(selectinload(BatchRow.units))
                    .order_by(BatchRow.ordinal)
                )
                completed_rows = list(result.scalars().all())
                _check_gates(batch, len(completed_rows), force)

                segments: list[str] = []
                for row in completed_rows:
                    if row.stitched_artifact_ref:
                        segments.append(row.stitched_artifact_ref)
                    else:
                        segments.extend(_row_unit_outputs(row))

                batch.stitch_status = StitchStatus.STITCHING
                batch.stitch_error = None
                await db.commit()

        log.info(
            "batch_stitch_started",
            batch_id=str(batch_id),
            rows=len(completed_rows),
            segments=len(segments),
            force=force,
        )
        return await self._run(Batch, batch_id, batch_id, segments, f"batch_{batch_id.hex}", stitcher)

    async def stitch_row(self, row_id: uuid.UUID, force: bool = False) -> StitchResponse:
        """Stitch a row's completed units into one artifact.

        Raises:
            RowNotFoundError: If the row does not exist
            StitchRejectedError: If a gate rejects the request
            ConfigurationError: If no stitching backend is configured
        """
        stitcher = self._require_stitcher()
        async with self._session_factory() as db:
            batch_id = await db.scalar(select(BatchRow.batch_id).where(BatchRow.id == row_id))
        if batch_id is None:
            raise RowNotFoundError(f"Row not found: {row_id}")

        async with self._state_machine.lock(batch_id):
            async with self._session_factory() as db:
                row = await db.get(BatchRow, row_id, options=[selectinload(BatchRow.units)])
                segments = _row_unit_outputs(row)
                _check_gates(row, len(segments), force)
                row.stitch_status = StitchStatus.STITCHING
                row.stitch_error = None
                await db.commit()

        log.info("row_stitch_started", row_id=str(row_id), segments=len(segments), force=force)
        return await self._run(BatchRow, batch_id, row_id, segments, f"row_{row_id.hex}", stitcher)

    async def _run(
        self,
        model: type[Batch] | type[BatchRow],
        batch_id: uuid.UUID,
        target_id: uuid.UUID,
        segments: list[str],
        target_key: str,
        stitcher: Stitcher,
    ) -> StitchResponse:
        try:
            result = await stitcher.stitch(segments, target_key)
        except asyncio.CancelledError:
            await asyncio.shield(
                self._finish(
                    model, batch_id, target_id, StitchStatus.FAILED, error=INTERRUPTED_MESSAGE
                )
            )
            log.warning("stitch_interrupted", target=target_key)
            raise
        except Exception as e:
            error = str(e)[:MAX_ERROR_MESSAGE_LENGTH] or type(e).__name__
            await self._finish(model, batch_id, target_id, StitchStatus.FAILED, error=error)
            log.error("stitch_failed", target=target_key, error=error[:200])
            if not isinstance(e, StitchError):
                raise
            return StitchResponse(
                target_id=target_id,
                status=StitchStatus.FAILED,
                segment_count=len(segments),
                error=error,
            )

        await self._finish(
            model, batch_id, target_id, StitchStatus.COMPLETED, artifact_ref=result.artifact_ref
        )
        log.info("stitch_completed", target=target_key, artifact_ref=result.artifact_ref)
        return StitchResponse(
            target_id=target_id,
            status=StitchStatus.COMPLETED,
            artifact_ref=result.artifact_ref,
            segment_count=result.segment_count,
        )

    async def _finish(
        self,
        model: type[Batch] | type[BatchRow],
        batch_id: uuid.UUID,
        target_id: uuid.UUID,
        status: StitchStatus,
        artifact_ref: str | None = None,
        error: str | None = None,
    ) -> None:
        async with self._state_machine.lock(batch_id):
            async with self._session_factory() as db:
                target = await db.get(model, target_id)
                target.stitch_status = status
                if status == StitchStatus.COMPLETED:
                    target.stitched_artifact_ref = artifact_ref
                    target.stitched_at = utcnow()
                    target.stitch_error = None
                else:
                    # A failed re-stitch keeps the previous artifact
                    target.stitch_error = error
                await db.commit()
