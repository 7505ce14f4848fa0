"""Tests for SQLAlchemy models and their transition tables."""

import uuid

import pytest
from sqlalchemy import select

from bulkgen.exceptions import InvalidStateTransitionError
from bulkgen.models import (
    Batch,
    BatchRow,
    BatchStatus,
    CreditReservation,
    ReservationStatus,
    RowStatus,
    RowUnit,
    StitchStatus,
)
from tests.support.factories import create_batch, create_row


class TestBatchModel:
    """Batch persistence and lifecycle validation."""

    async def test_batch_with_rows_and_units_round_trips(self, async_session):
        """[P1] Rows and units persist with their ordinals and defaults.

        GIVEN: A batch with two rows of two units each
        WHEN: It is committed and re-read
        THEN: Ids are UUIDs, rows come back in ordinal order, defaults applied
        """
        batch = create_batch(total_rows=2)
        create_row(batch, ordinal=1, prompts=("b1", "b2"))
        create_row(batch, ordinal=0, prompts=("a1", "a2"))
        async_session.add(batch)
        await async_session.commit()

        saved = (await async_session.execute(select(Batch).where(Batch.id == batch.id))).scalar_one()
        rows = (
            await async_session.execute(
                select(BatchRow).where(BatchRow.batch_id == batch.id).order_by(BatchRow.ordinal)
            )
        ).scalars().all()

        assert isinstance(saved.id, uuid.UUID)
        assert saved.stitch_status == StitchStatus.IDLE
        assert [row.ordinal for row in rows] == [0, 1]
        assert [unit.prompt for unit in rows[0].units] == ["a1", "a2"]
        assert rows[0].status == RowStatus.PENDING
        assert rows[0].is_test_run is False

    def test_staged_lifecycle_transitions_are_allowed(self):
        """[P1] draft → test_running → paused_for_review → running → completed."""
        batch = create_batch(status=BatchStatus.DRAFT)

        batch.status = BatchStatus.TEST_RUNNING
        batch.status = BatchStatus.PAUSED_FOR_REVIEW
        batch.status = BatchStatus.RUNNING
        batch.status = BatchStatus.COMPLETED

        assert batch.status == BatchStatus.COMPLETED

    def test_draft_cannot_jump_to_completed(self):
        """[P1] Nothing ran, so draft → completed is rejected."""
        batch = create_batch(status=BatchStatus.DRAFT)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            batch.status = BatchStatus.COMPLETED

        assert exc_info.value.from_status == BatchStatus.DRAFT
        assert exc_info.value.to_status == BatchStatus.COMPLETED
        assert "draft" in str(exc_info.value)

    def test_cancelled_is_terminal(self):
        batch = create_batch(status=BatchStatus.RUNNING)
        batch.status = BatchStatus.CANCELLED

        with pytest.raises(InvalidStateTransitionError):
            batch.status = BatchStatus.RUNNING

    def test_settled_batch_can_reopen_for_retry(self):
        """[P2] partially_failed → running is the retry path."""
        batch = create_batch(status=BatchStatus.PARTIALLY_FAILED)
        batch.status = BatchStatus.RUNNING
        assert batch.status == BatchStatus.RUNNING


class TestRowAndUnitTransitions:
    """Row/unit transition tables."""

    def test_row_cannot_leave_completed(self):
        batch = create_batch()
        row = create_row(batch, status=RowStatus.COMPLETED)

        with pytest.raises(InvalidStateTransitionError):
            row.status = RowStatus.PENDING

    def test_failed_row_can_return_to_pending(self):
        batch = create_batch()
        row = create_row(batch, status=RowStatus.FAILED)

        row.status = RowStatus.PENDING

        assert row.status == RowStatus.PENDING

    def test_pending_row_can_be_failed_by_abort(self):
        batch = create_batch()
        row = create_row(batch, status=RowStatus.PENDING)

        row.status = RowStatus.FAILED

        assert row.is_terminal is True

    def test_completed_unit_resets_for_retry(self):
        unit = RowUnit(ordinal=0, prompt="x", status=RowStatus.COMPLETED)
        unit.status = RowStatus.PENDING
        assert unit.status == RowStatus.PENDING

    def test_stitch_failed_accepts_new_stitch(self):
        """[P2] A failed stitch can be retried like an idle one."""
        row = BatchRow(ordinal=0, payload={}, stitch_status=StitchStatus.FAILED)
        row.stitch_status = StitchStatus.STITCHING
        assert row.stitch_status == StitchStatus.STITCHING

    def test_stitch_idle_cannot_complete_directly(self):
        batch = create_batch(stitch_status=StitchStatus.IDLE)
        with pytest.raises(InvalidStateTransitionError):
            batch.stitch_status = StitchStatus.COMPLETED


class TestReservationModel:
    def test_settled_reservation_is_final(self):
        reservation = CreditReservation(user_id="u", amount=3, status=ReservationStatus.REFUNDED)

        with pytest.raises(InvalidStateTransitionError):
            reservation.status = ReservationStatus.DEBITED
