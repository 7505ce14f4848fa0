"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the batch orchestrator.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

State Machines:
    Batches, rows, units, stitch targets and credit reservations each carry a
    status enum plus a VALID_TRANSITIONS table. ``@validates`` hooks reject any
    assignment not listed in the table with InvalidStateTransitionError, so a
    bug in a service surfaces as an exception instead of a drifted row.

Credit Ledger:
    CreditAccount holds the spendable balance. CreditTransaction rows are
    append-only; ``amount`` is the signed delta applied to the balance and
    ``balance_after`` is the balance once the delta was applied.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from bulkgen.exceptions import ErrorKind, InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def _check_transition(
    transitions: dict[Any, list[Any]], current: enum.Enum | None, value: enum.Enum
) -> enum.Enum:
    # Initial assignment (object construction) is never validated
    if current is None or current == value:
        return value
    if value not in transitions.get(current, []):
        raise InvalidStateTransitionError(
            f"Invalid transition: {current.value} → {value.value}",
            from_status=current,
            to_status=value,
        )
    return value


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase), not enum.name
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BatchStatus(enum.Enum):
    """Batch lifecycle.

    Staged Flow:
        draft → test_running → paused_for_review → running → completed|partially_failed

    Full Flow:
        draft → running → completed|partially_failed

    Retry Flow:
        completed|partially_failed → running

    Cancellation:
        any non-terminal state → cancelled
    """

    DRAFT = "draft"
    TEST_RUNNING = "test_running"
    PAUSED_FOR_REVIEW = "paused_for_review"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELLED = "cancelled"


class RowStatus(enum.Enum):
    """Row (and unit) execution status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StitchStatus(enum.Enum):
    """Status of a stitched artifact for a batch or a row."""

    IDLE = "idle"
    STITCHING = "stitching"
    COMPLETED = "completed"
    FAILED = "failed"


class ReservationStatus(enum.Enum):
    """Credit reservation lifecycle."""

    ACTIVE = "active"
    DEBITED = "debited"
    REFUNDED = "refunded"


class TransactionType(enum.Enum):
    """Credit transaction kinds recorded in the append-only ledger."""

    RESERVE = "reserve"
    DEBIT = "debit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


# Batch states from which abort is allowed
ABORTABLE_BATCH_STATUSES = frozenset(
    {
        BatchStatus.DRAFT,
        BatchStatus.TEST_RUNNING,
        BatchStatus.PAUSED_FOR_REVIEW,
        BatchStatus.RUNNING,
    }
)

# Batch states in which admitted rows are being executed
EXECUTING_BATCH_STATUSES = frozenset({BatchStatus.TEST_RUNNING, BatchStatus.RUNNING})

TERMINAL_ROW_STATUSES = frozenset({RowStatus.COMPLETED, RowStatus.FAILED})

STITCH_TRANSITIONS: dict[StitchStatus, list[StitchStatus]] = {
    StitchStatus.IDLE: [StitchStatus.STITCHING],
    StitchStatus.STITCHING: [StitchStatus.COMPLETED, StitchStatus.FAILED],
    # Forced re-stitch
    StitchStatus.COMPLETED: [StitchStatus.STITCHING],
    # A failed stitch is retried exactly like an idle one
    StitchStatus.FAILED: [StitchStatus.STITCHING],
}


class Batch(Base):
    """A user-submitted collection of generation rows sharing a base configuration.

    Aggregate counts are NOT stored here; they are recomputed from row states
    by BatchStateMachine.count_rows() so they can never drift.
    """

    __tablename__ = "batches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Shared parameters applied to every row (model, aspect_ratio,
    # unit_duration_seconds, ...). Never mutated after creation.
    base_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[BatchStatus] = mapped_column(
        _enum_column(BatchStatus, "batchstatus"),
        nullable=False,
        default=BatchStatus.DRAFT,
        index=True,
    )
    staged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_rows: Mapped[int] = mapped_column(Integer, nullable=False)
    test_run_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stitch_status: Mapped[StitchStatus] = mapped_column(
        _enum_column(StitchStatus, "stitchstatus"),
        nullable=False,
        default=StitchStatus.IDLE,
    )
    stitched_artifact_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    stitch_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stitched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    rows: Mapped[list["BatchRow"]] = relationship(
        "BatchRow",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BatchRow.ordinal",
    )

    VALID_TRANSITIONS = {
        BatchStatus.DRAFT: [
            BatchStatus.TEST_RUNNING,
            BatchStatus.RUNNING,
            BatchStatus.CANCELLED,
        ],
        BatchStatus.TEST_RUNNING: [BatchStatus.PAUSED_FOR_REVIEW, BatchStatus.CANCELLED],
        BatchStatus.PAUSED_FOR_REVIEW: [BatchStatus.RUNNING, BatchStatus.CANCELLED],
        BatchStatus.RUNNING: [
            BatchStatus.COMPLETED,
            BatchStatus.PARTIALLY_FAILED,
            BatchStatus.CANCELLED,
        ],
        # retry_failed re-opens a settled batch
        BatchStatus.COMPLETED: [BatchStatus.RUNNING],
        BatchStatus.PARTIALLY_FAILED: [BatchStatus.RUNNING],
        BatchStatus.CANCELLED: [],
    }

    @validates("status")
    def validate_status_change(self, key: str, value: BatchStatus) -> BatchStatus:
        """Reject batch transitions not listed in VALID_TRANSITIONS."""
        return _check_transition(self.VALID_TRANSITIONS, self.status, value)

    @validates("stitch_status")
    def validate_stitch_status_change(self, key: str, value: StitchStatus) -> StitchStatus:
        """Reject stitch transitions not listed in STITCH_TRANSITIONS."""
        return _check_transition(STITCH_TRANSITIONS, self.stitch_status, value)

    def __repr__(self) -> str:
        return (
            f"<Batch(id={self.id!s:.8}, name={self.name!r}, "
            f"status={self.status.value!r}, total_rows={self.total_rows})>"
        )


class BatchRow(Base):
    """One generation task within a batch, composed of one or more ordered units.

    ``payload`` carries the per-row generation spec: assignment identity
    (avatar_id, avatar_name, voice) plus any per-row overrides of the batch
    base_config (image_url, aspect_ratio...). Units live in ``row_units``.

    Credits:
        reservation_id / credits_reserved are set once the executor reserved
        credits; credits_charged once the reservation was debited. Retry clears
        all three (full billing reset).
    """

    __tablename__ = "batch_rows"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[RowStatus] = mapped_column(
        _enum_column(RowStatus, "rowstatus"),
        nullable=False,
        default=RowStatus.PENDING,
        index=True,
    )
    is_test_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Set when the state machine hands the row to the worker pool
    admitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error_kind: Mapped[ErrorKind | None] = mapped_column(
        _enum_column(ErrorKind, "errorkind"),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    reservation_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    credits_reserved: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credits_charged: Mapped[int | None] = mapped_column(Integer, nullable=True)

    stitch_status: Mapped[StitchStatus] = mapped_column(
        _enum_column(StitchStatus, "stitchstatus"),
        nullable=False,
        default=StitchStatus.IDLE,
    )
    stitched_artifact_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    stitch_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stitched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    batch: Mapped["Batch"] = relationship("Batch", back_populates="rows")
    units: Mapped[list["RowUnit"]] = relationship(
        "RowUnit",
        back_populates="row",
        cascade="all, delete-orphan",
        order_by="RowUnit.ordinal",
    )

    __table_args__ = (
        UniqueConstraint("batch_id", "ordinal", name="uq_batch_rows_batch_id_ordinal"),
        Index("ix_batch_rows_batch_id_status", "batch_id", "status"),
    )

    VALID_TRANSITIONS = {
        # pending → failed: aborted before the executor claimed it
        RowStatus.PENDING: [RowStatus.IN_PROGRESS, RowStatus.FAILED],
        RowStatus.IN_PROGRESS: [RowStatus.COMPLETED, RowStatus.FAILED],
        RowStatus.COMPLETED: [],
        # Only the retry controller moves a row backward
        RowStatus.FAILED: [RowStatus.PENDING],
    }

    @validates("status")
    def validate_status_change(self, key: str, value: RowStatus) -> RowStatus:
        """Reject row transitions not listed in VALID_TRANSITIONS."""
        return _check_transition(self.VALID_TRANSITIONS, self.status, value)

    @validates("stitch_status")
    def validate_stitch_status_change(self, key: str, value: StitchStatus) -> StitchStatus:
        """Reject stitch transitions not listed in STITCH_TRANSITIONS."""
        return _check_transition(STITCH_TRANSITIONS, self.stitch_status, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ROW_STATUSES

    def __repr__(self) -> str:
        return (
            f"<BatchRow(id={self.id!s:.8}, ordinal={self.ordinal}, "
            f"status={self.status.value!r})>"
        )


class RowUnit(Base):
    """The smallest independently rendered piece of a row (one scene).

    Units of a row execute strictly in ordinal order; unit N+1 is not
    submitted until unit N is terminal.
    """

    __tablename__ = "row_units"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    row_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("batch_rows.id", ondelete="CASCADE"),
        nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)

    # Estimated length used for the reservation; None means batch default
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Length reported by the provider once rendered; drives the debit
    rendered_duration_seconds: Mapped[float | None] = mapped_column(nullable=True)

    status: Mapped[RowStatus] = mapped_column(
        _enum_column(RowStatus, "rowstatus"),
        nullable=False,
        default=RowStatus.PENDING,
    )
    provider_job_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    output_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_kind: Mapped[ErrorKind | None] = mapped_column(
        _enum_column(ErrorKind, "errorkind"),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    row: Mapped["BatchRow"] = relationship("BatchRow", back_populates="units")

    __table_args__ = (UniqueConstraint("row_id", "ordinal", name="uq_row_units_row_id_ordinal"),)

    VALID_TRANSITIONS = {
        RowStatus.PENDING: [RowStatus.IN_PROGRESS, RowStatus.FAILED],
        RowStatus.IN_PROGRESS: [RowStatus.COMPLETED, RowStatus.FAILED],
        # Retry re-renders every unit of the row
        RowStatus.COMPLETED: [RowStatus.PENDING],
        RowStatus.FAILED: [RowStatus.PENDING],
    }

    @validates("status")
    def validate_status_change(self, key: str, value: RowStatus) -> RowStatus:
        """Reject unit transitions not listed in VALID_TRANSITIONS."""
        return _check_transition(self.VALID_TRANSITIONS, self.status, value)

    def __repr__(self) -> str:
        return (
            f"<RowUnit(id={self.id!s:.8}, ordinal={self.ordinal}, "
            f"status={self.status.value!r})>"
        )


class CreditAccount(Base):
    """Per-user spendable credit balance.

    Reservations are taken out of ``balance`` immediately, so the column is
    the AVAILABLE balance; held credits are the sum of active reservations.
    """

    __tablename__ = "credit_accounts"

    user_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),)

    def __repr__(self) -> str:
        return f"<CreditAccount(user_id={self.user_id!r}, balance={self.balance})>"


class CreditReservation(Base):
    """A provisional hold against a user's balance, later debited or refunded."""

    __tablename__ = "credit_reservations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        _enum_column(ReservationStatus, "reservationstatus"),
        nullable=False,
        default=ReservationStatus.ACTIVE,
    )
    credits_charged: Mapped[int | None] = mapped_column(Integer, nullable=True)
    batch_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    row_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (CheckConstraint("amount > 0", name="ck_credit_reservations_amount_positive"),)

    VALID_TRANSITIONS = {
        ReservationStatus.ACTIVE: [ReservationStatus.DEBITED, ReservationStatus.REFUNDED],
        ReservationStatus.DEBITED: [],
        ReservationStatus.REFUNDED: [],
    }

    @validates("status")
    def validate_status_change(self, key: str, value: ReservationStatus) -> ReservationStatus:
        """Reject reservation transitions not listed in VALID_TRANSITIONS."""
        return _check_transition(self.VALID_TRANSITIONS, self.status, value)

    def __repr__(self) -> str:
        return (
            f"<CreditReservation(id={self.id!s:.8}, user_id={self.user_id!r}, "
            f"amount={self.amount}, status={self.status.value!r})>"
        )


class CreditTransaction(Base):
    """Append-only credit ledger entry.

    Amount Convention:
        ``amount`` is the signed delta applied to the available balance:
        reserve → -R, debit → +(R - charged), refund → +R, adjustment → ±N.
        A completed row therefore nets to -credits_charged and a failed or
        cancelled row nets to zero.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType, "transactiontype"),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("credit_reservations.id", ondelete="RESTRICT"),
        nullable=True,
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    row_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_credit_transactions_user_id_created_at", "user_id", "created_at"),
        Index("ix_credit_transactions_row_id", "row_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(type={self.type.value!r}, user_id={self.user_id!r}, "
            f"amount={self.amount}, balance_after={self.balance_after})>"
        )
