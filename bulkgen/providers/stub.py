"""Stub rendering provider for local development.

Simulates asynchronous rendering without external calls: each job reports
RUNNING for a configurable number of polls, then SUCCEEDED with a fake
output URL. Prompts containing a ``[fail:KIND]`` marker fail with that
ErrorKind, which makes failure paths easy to exercise by hand.
"""

import re
import uuid
from dataclasses import dataclass

from bulkgen.exceptions import ErrorKind
from bulkgen.providers.base import (
    ProviderJobState,
    ProviderJobStatus,
    RenderingProvider,
    UnitRenderRequest,
)
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

_FAIL_MARKER = re.compile(r"\[fail:([A-Z_]+)\]")


@dataclass
class _StubJob:
    request: UnitRenderRequest
    polls: int = 0
    cancelled: bool = False


class StubProvider(RenderingProvider):
    """Provider that simulates rendering in memory."""

    def __init__(self, polls_until_done: int = 1, base_output_url: str = "https://stub.local/videos"):
        self.polls_until_done = polls_until_done
        self.base_output_url = base_output_url.rstrip("/")
        self._jobs: dict[str, _StubJob] = {}

    @property
    def name(self) -> str:
        return "stub"

    async def submit(self, request: UnitRenderRequest) -> str:
        job_id = f"stub-{uuid.uuid4().hex[:12]}"
        self._jobs[job_id] = _StubJob(request=request)
        log.info("stub_job_submitted", job_id=job_id, prompt=request.prompt[:100])
        return job_id

    async def poll(self, job_id: str) -> ProviderJobStatus:
        job = self._jobs.get(job_id)
        if job is None:
            return ProviderJobStatus(
                job_id=job_id,
                state=ProviderJobState.FAILED,
                error_kind=ErrorKind.PROVIDER_ERROR,
                error_message=f"Unknown stub job {job_id}",
            )
        if job.cancelled:
            return ProviderJobStatus(
                job_id=job_id,
                state=ProviderJobState.FAILED,
                error_kind=ErrorKind.CANCELLED,
                error_message="Cancelled",
            )

        job.polls += 1
        if job.polls < self.polls_until_done:
            return ProviderJobStatus(job_id=job_id, state=ProviderJobState.RUNNING)

        marker = _FAIL_MARKER.search(job.request.prompt)
        if marker:
            kind = ErrorKind.__members__.get(marker.group(1), ErrorKind.PROVIDER_ERROR)
            return ProviderJobStatus(
                job_id=job_id,
                state=ProviderJobState.FAILED,
                error_kind=kind,
                error_message=f"Stub failure requested ({kind.value})",
            )

        return ProviderJobStatus(
            job_id=job_id,
            state=ProviderJobState.SUCCEEDED,
            output_ref=f"{self.base_output_url}/{job_id}.mp4",
            duration_seconds=float(job.request.duration_seconds),
        )

    async def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancelled = True
        return True
