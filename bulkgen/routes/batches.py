"""Batch routes.

This module provides the caller-facing batch operations:
- POST /api/v1/batches                        - Launch a batch (staged or full)
- GET  /api/v1/batches/{batch_id}             - Batch status with per-row summaries
- POST /api/v1/batches/{batch_id}/resume      - Approve a paused test run
- POST /api/v1/batches/{batch_id}/abort       - Cancel and refund unfinished rows
- POST /api/v1/batches/{batch_id}/retry-failed
- POST /api/v1/batches/{batch_id}/stitch      - Stitch completed rows (?force=true)
- POST /api/v1/batches/rows/{row_id}/stitch   - Stitch a row's completed units

Domain errors are mapped to HTTP statuses by the handlers registered in
bulkgen.main.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, status

from bulkgen.routes import get_orchestrator
from bulkgen.schemas.batch import (
    AbortBatchResponse,
    BatchStatusResponse,
    LaunchBatchRequest,
    LaunchBatchResponse,
    ResumeBatchResponse,
    RetryFailedResponse,
    StitchResponse,
)
from bulkgen.services.orchestrator import BatchOrchestrator

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/batches", tags=["batches"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LaunchBatchResponse)
async def launch_batch(
    body: LaunchBatchRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> LaunchBatchResponse:
    """Create a batch and admit its first wave of rows.

    Returns:
        201 Created: Batch id and its status right after admission
        422 Unprocessable Entity: Malformed rows or base config
    """
    batch_id = await orchestrator.launch_batch(
        owner_id=body.owner_id,
        rows=body.rows,
        base_config=body.base_config,
        staged=body.staged,
        name=body.name,
    )
    batch = await orchestrator.get_batch_status(batch_id)
    log.info("batch_launch_accepted", batch_id=str(batch_id), rows=len(body.rows))
    return LaunchBatchResponse(batch_id=batch_id, status=batch.status)


@router.get("/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(
    batch_id: UUID,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> BatchStatusResponse:
    return await orchestrator.get_batch_status(batch_id)


@router.post("/{batch_id}/resume", response_model=ResumeBatchResponse)
async def resume_batch(
    batch_id: UUID,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> ResumeBatchResponse:
    admitted = await orchestrator.resume_batch(batch_id)
    return ResumeBatchResponse(batch_id=batch_id, admitted=admitted)


@router.post("/{batch_id}/abort", response_model=AbortBatchResponse)
async def abort_batch(
    batch_id: UUID,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> AbortBatchResponse:
    summary = await orchestrator.abort_batch(batch_id)
    return AbortBatchResponse.model_validate(summary)


@router.post("/{batch_id}/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(
    batch_id: UUID,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> RetryFailedResponse:
    retried = await orchestrator.retry_failed(batch_id)
    return RetryFailedResponse(batch_id=batch_id, retried=retried)


@router.post("/{batch_id}/stitch", response_model=StitchResponse)
async def stitch_batch(
    batch_id: UUID,
    force: bool = False,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> StitchResponse:
    """Stitch the batch's completed rows, in ordinal order, into one video.

    Returns:
        200 OK: Stitch outcome (completed, or failed with the backend error)
        409 Conflict: Fewer than 2 completed rows, already stitched, or in progress
        503 Service Unavailable: No stitching backend configured
    """
    return await orchestrator.stitch_batch(batch_id, force=force)


@router.post("/rows/{row_id}/stitch", response_model=StitchResponse)
async def stitch_row(
    row_id: UUID,
    force: bool = False,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> StitchResponse:
    return await orchestrator.stitch_row(row_id, force=force)
