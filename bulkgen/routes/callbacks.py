"""Provider callback routes.

- POST /api/v1/callbacks/kie?token=... - Kie.ai job completion callback

Pattern:
- Verify shared-secret token (fast, no DB)
- Parse payload into a ProviderJobStatus
- Hand it to the executor waiting on the job
- Return 200 immediately

Callbacks only shorten the wait; polling stays authoritative, so an
unknown or duplicate callback is acknowledged and ignored.
"""

import hmac
import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from bulkgen.config import get_callback_token
from bulkgen.providers.kie import KieProvider
from bulkgen.routes import get_orchestrator
from bulkgen.services.orchestrator import BatchOrchestrator

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/callbacks", tags=["callbacks"])


def verify_callback_token(provided: str | None) -> bool:
    """Constant-time comparison against CALLBACK_TOKEN.

    With no token configured every callback is accepted.
    """
    expected = get_callback_token()
    if not expected:
        return True
    return hmac.compare_digest(provided or "", expected)


@router.post("/kie")
async def handle_kie_callback(
    request: Request,
    token: str | None = None,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Handle a Kie.ai job callback.

    Returns:
        200 OK: Callback accepted (delivered or ignored)
        401 Unauthorized: Token mismatch
        400 Bad Request: Body is not a JSON object
    """
    if not verify_callback_token(token):
        log.warning("callback_unauthorized", provider="kie")
        raise HTTPException(status_code=401, detail="Invalid callback token")

    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError as e:
        log.warning("callback_invalid_payload", provider="kie", body=body.decode(errors="replace")[:200])
        raise HTTPException(status_code=400, detail="Invalid payload format") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload format")

    job_status = KieProvider.parse_callback(payload)
    if job_status is None:
        log.warning("callback_missing_task_id", provider="kie")
        return JSONResponse(status_code=200, content={"status": "ignored"})

    delivered = orchestrator.handle_provider_callback(job_status)
    return JSONResponse(
        status_code=200,
        content={
            "status": "delivered" if delivered else "ignored",
            "task_id": job_status.job_id,
        },
    )
