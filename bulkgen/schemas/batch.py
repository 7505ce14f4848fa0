"""Pydantic schemas for batch launch and status reporting.

Schema Naming Convention:
    - *Spec / BaseConfig / LaunchBatchRequest: caller input (launch_batch)
    - *Summary / RowCounts / BatchStatusResponse: status output (get_batch_status)

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bulkgen.exceptions import ErrorKind
from bulkgen.models import BatchStatus, RowStatus, StitchStatus


class UnitSpec(BaseModel):
    """One scene of a row."""

    prompt: str = Field(
        ...,
        min_length=1,
        description="Prompt text rendered for this unit",
        examples=["A barista hands a latte to the camera and smiles."],
    )
    duration_seconds: int | None = Field(
        default=None,
        ge=1,
        le=600,
        description="Estimated duration; defaults to the batch unit_duration_seconds",
    )


class RowSpec(BaseModel):
    """Per-row generation spec.

    Assignment identity (avatar / voice) plus per-row overrides of the batch
    base configuration. Unknown keys are kept and forwarded to the provider.
    """

    model_config = ConfigDict(extra="allow")

    avatar_id: str | None = Field(default=None, description="Actor/avatar reference")
    avatar_name: str | None = Field(default=None, description="Display name of the avatar")
    voice_id: str | None = Field(default=None, description="Voice reference")
    image_url: str | None = Field(default=None, description="Reference image for image-to-video")
    units: list[UnitSpec] = Field(..., min_length=1, description="Ordered scenes")

    def payload(self) -> dict[str, Any]:
        """Row payload persisted on batch_rows (everything except units)."""
        return self.model_dump(exclude={"units"}, exclude_none=True)


class BaseConfig(BaseModel):
    """Shared parameters applied to every row; immutable after creation."""

    model_config = ConfigDict(extra="allow")

    model: str | None = Field(default=None, examples=["veo3_fast"])
    aspect_ratio: str | None = Field(default=None, examples=["9:16"])
    unit_duration_seconds: int | None = Field(default=None, ge=1, le=600)


class LaunchBatchRequest(BaseModel):
    """Body of POST /api/v1/batches."""

    owner_id: str = Field(..., min_length=1, max_length=100)
    name: str | None = Field(default=None, max_length=255)
    rows: list[RowSpec] = Field(..., min_length=1)
    base_config: BaseConfig = Field(default_factory=BaseConfig)
    staged: bool = Field(default=True, description="Run a test subset first and pause for review")


class LaunchBatchResponse(BaseModel):
    batch_id: UUID
    status: BatchStatus


class RowCounts(BaseModel):
    """Row counts derived from row states; always sums to total."""

    total: int
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0


class StitchInfo(BaseModel):
    status: StitchStatus
    artifact_ref: str | None = None
    error: str | None = None
    stitched_at: datetime | None = None


class UnitSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ordinal: int
    status: RowStatus
    output_ref: str | None = None
    attempts: int = 0
    error_kind: ErrorKind | None = None
    error_message: str | None = None


class RowSummary(BaseModel):
    """Per-row status, including why it failed and what to do about it."""

    id: UUID
    ordinal: int
    status: RowStatus
    is_test_run: bool
    admitted: bool
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    user_action: str | None = None
    credits_reserved: int | None = None
    credits_charged: int | None = None
    units_completed: int
    units_total: int
    units: list[UnitSummary]
    stitch: StitchInfo


class BatchStatusResponse(BaseModel):
    """Result of get_batch_status: latest persisted state, never blocking."""

    id: UUID
    owner_id: str
    name: str
    status: BatchStatus
    staged: bool
    test_run_size: int
    counts: RowCounts
    total_credits_charged: int
    rows: list[RowSummary]
    stitch: StitchInfo
    created_at: datetime
    updated_at: datetime


class StitchResponse(BaseModel):
    """Outcome of a stitch command."""

    target_id: UUID
    status: StitchStatus
    artifact_ref: str | None = None
    segment_count: int = 0
    error: str | None = None


class ResumeBatchResponse(BaseModel):
    batch_id: UUID
    admitted: int = Field(..., description="Rows admitted by the resume")


class RetryFailedResponse(BaseModel):
    batch_id: UUID
    retried: int = Field(..., description="Failed rows reset to pending and re-admitted")


class AbortBatchResponse(BaseModel):
    """Result of aborting a batch."""

    model_config = ConfigDict(from_attributes=True)

    batch_id: UUID
    rows_cancelled: int
    reservations_refunded: int
    provider_jobs_cancelled: int


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx raised by the orchestrator API."""

    error: str
    detail: str
    kind: str | None = None
