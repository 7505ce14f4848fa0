"""Create orchestrator schema.

This migration creates the batch orchestrator tables:
    - batches: batch lifecycle, staged rollout and batch-level stitch state
    - batch_rows: per-row status, error kind, credit reservation, row stitch state
    - row_units: ordered scenes of a row with provider job ids
    - credit_accounts / credit_reservations / credit_transactions: ledger

Postgres ENUM types store enum values (lowercase statuses, uppercase error
kinds) to match the ORM's values_callable.

Revision ID: 001_initial_orchestrator_schema
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_orchestrator_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

batch_status = postgresql.ENUM(
    "draft",
    "test_running",
    "paused_for_review",
    "running",
    "completed",
    "partially_failed",
    "cancelled",
    name="batchstatus",
    create_type=False,
)
row_status = postgresql.ENUM(
    "pending", "in_progress", "completed", "failed", name="rowstatus", create_type=False
)
stitch_status = postgresql.ENUM(
    "idle", "stitching", "completed", "failed", name="stitchstatus", create_type=False
)
error_kind = postgresql.ENUM(
    "CREDIT_EXHAUSTED",
    "RATE_LIMITED",
    "AUTH_ERROR",
    "INVALID_PARAMS",
    "TIMEOUT",
    "PROVIDER_ERROR",
    "CANCELLED",
    name="errorkind",
    create_type=False,
)
reservation_status = postgresql.ENUM(
    "active", "debited", "refunded", name="reservationstatus", create_type=False
)
transaction_type = postgresql.ENUM(
    "reserve", "debit", "refund", "adjustment", name="transactiontype", create_type=False
)

ENUM_TYPES = (batch_status, row_status, stitch_status, error_kind, reservation_status, transaction_type)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create enum types, orchestrator tables and indexes."""
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "batches",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("base_config", sa.JSON(), nullable=False),
        sa.Column("status", batch_status, nullable=False, server_default="draft"),
        sa.Column("staged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_rows", sa.Integer(), nullable=False),
        sa.Column("test_run_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stitch_status", stitch_status, nullable=False, server_default="idle"),
        sa.Column("stitched_artifact_ref", sa.Text(), nullable=True),
        sa.Column("stitch_error", sa.Text(), nullable=True),
        sa.Column("stitched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_batches_owner_id", "batches", ["owner_id"])
    op.create_index("ix_batches_status", "batches", ["status"])

    op.create_table(
        "batch_rows",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", row_status, nullable=False, server_default="pending"),
        sa.Column("is_test_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("admitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_kind", error_kind, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("credits_reserved", sa.Integer(), nullable=True),
        sa.Column("credits_charged", sa.Integer(), nullable=True),
        sa.Column("stitch_status", stitch_status, nullable=False, server_default="idle"),
        sa.Column("stitched_artifact_ref", sa.Text(), nullable=True),
        sa.Column("stitch_error", sa.Text(), nullable=True),
        sa.Column("stitched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["batch_id"], ["batches.id"], name="fk_batch_rows_batch_id", ondelete="CASCADE"
        ),
        sa.UniqueConstraint("batch_id", "ordinal", name="uq_batch_rows_batch_id_ordinal"),
    )
    op.create_index("ix_batch_rows_status", "batch_rows", ["status"])
    op.create_index("ix_batch_rows_batch_id_status", "batch_rows", ["batch_id", "status"])

    op.create_table(
        "row_units",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("row_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("rendered_duration_seconds", sa.Float(), nullable=True),
        sa.Column("status", row_status, nullable=False, server_default="pending"),
        sa.Column("provider_job_id", sa.String(255), nullable=True),
        sa.Column("output_ref", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_kind", error_kind, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["row_id"], ["batch_rows.id"], name="fk_row_units_row_id", ondelete="CASCADE"
        ),
        sa.UniqueConstraint("row_id", "ordinal", name="uq_row_units_row_id_ordinal"),
    )
    # Callback lookups by provider job id
    op.create_index("ix_row_units_provider_job_id", "row_units", ["provider_job_id"])

    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )

    op.create_table(
        "credit_reservations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", reservation_status, nullable=False, server_default="active"),
        sa.Column("credits_charged", sa.Integer(), nullable=True),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("row_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount > 0", name="ck_credit_reservations_amount_positive"),
    )
    op.create_index("ix_credit_reservations_user_id", "credit_reservations", ["user_id"])
    op.create_index("ix_credit_reservations_row_id", "credit_reservations", ["row_id"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("row_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["reservation_id"],
            ["credit_reservations.id"],
            name="fk_credit_transactions_reservation_id",
            ondelete="RESTRICT",
        ),
    )
    op.create_index(
        "ix_credit_transactions_user_id_created_at", "credit_transactions", ["user_id", "created_at"]
    )
    op.create_index("ix_credit_transactions_row_id", "credit_transactions", ["row_id"])


def downgrade() -> None:
    """Drop orchestrator tables and enum types."""
    op.drop_table("credit_transactions")
    op.drop_table("credit_reservations")
    op.drop_table("credit_accounts")
    op.drop_table("row_units")
    op.drop_table("batch_rows")
    op.drop_table("batches")

    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)
