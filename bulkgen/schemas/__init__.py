"""Pydantic schemas for request/response validation."""

from bulkgen.schemas.batch import (
    AbortBatchResponse,
    BaseConfig,
    BatchStatusResponse,
    ErrorResponse,
    LaunchBatchRequest,
    LaunchBatchResponse,
    ResumeBatchResponse,
    RetryFailedResponse,
    RowCounts,
    RowSpec,
    RowSummary,
    StitchInfo,
    StitchResponse,
    UnitSpec,
    UnitSummary,
)

__all__ = [
    "AbortBatchResponse",
    "BaseConfig",
    "BatchStatusResponse",
    "ErrorResponse",
    "LaunchBatchRequest",
    "LaunchBatchResponse",
    "ResumeBatchResponse",
    "RetryFailedResponse",
    "RowCounts",
    "RowSpec",
    "RowSummary",
    "StitchInfo",
    "StitchResponse",
    "UnitSpec",
    "UnitSummary",
]
