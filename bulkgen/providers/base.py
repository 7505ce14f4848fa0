"""Base interface for video rendering providers.

The orchestrator only ever sees the types in this module. Provider-native
error payloads (HTTP status codes, free-text messages, vendor error codes)
are classified into ErrorKind by classify_provider_error() inside the
adapter and never leak past it.
"""

import enum
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from bulkgen.exceptions import ErrorKind


class ProviderJobState(enum.Enum):
    """Provider-side job state, normalised across vendors."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProviderJobState.SUCCEEDED, ProviderJobState.FAILED)


@dataclass
class UnitRenderRequest:
    """Request for rendering one unit (scene) of a row."""

    batch_id: uuid.UUID
    row_id: uuid.UUID
    unit_id: uuid.UUID
    ordinal: int
    prompt: str
    duration_seconds: int
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderJobStatus:
    """Result of polling (or being called back about) a provider job."""

    job_id: str
    state: ProviderJobState
    output_ref: str | None = None
    duration_seconds: float | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None


class ProviderError(Exception):
    """A classified provider failure.

    Attributes:
        kind: ErrorKind the failure was classified into
        status_code: HTTP status code when the failure came from a response
    """

    def __init__(self, kind: ErrorKind, message: str, status_code: int | None = None):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)


def classify_provider_error(status_code: int | None, message: str | None) -> ErrorKind:
    """Classify a provider failure into the closed ErrorKind taxonomy.

    Classification Rules (first match wins):
        - HTTP 401/403 → AUTH_ERROR
        - HTTP 402, or message mentions credit / insufficient / balance
          → CREDIT_EXHAUSTED
        - HTTP 429 or message mentions rate limit → RATE_LIMITED
        - HTTP 400/422, or message mentions invalid / parameter /
          audio_filtered / policy → INVALID_PARAMS
        - anything else → PROVIDER_ERROR (retryable catch-all)

    Args:
        status_code: HTTP status code, or None for in-band job failures
        message: Provider error text (may be None)

    Returns:
        ErrorKind for the failure.

    Example:
        >>> classify_provider_error(429, "Too many requests")
        <ErrorKind.RATE_LIMITED: 'RATE_LIMITED'>
        >>> classify_provider_error(500, "upstream exploded")
        <ErrorKind.PROVIDER_ERROR: 'PROVIDER_ERROR'>
    """
    text = (message or "").lower()

    if status_code in (401, 403):
        return ErrorKind.AUTH_ERROR
    if status_code == 402 or any(token in text for token in ("credit", "insufficient", "balance")):
        return ErrorKind.CREDIT_EXHAUSTED
    if status_code == 429 or "rate limit" in text or "too many requests" in text:
        return ErrorKind.RATE_LIMITED
    if status_code in (400, 422):
        return ErrorKind.INVALID_PARAMS
    if any(token in text for token in ("invalid", "parameter", "audio_filtered", "policy")):
        return ErrorKind.INVALID_PARAMS
    return ErrorKind.PROVIDER_ERROR


class RenderingProvider(ABC):
    """Abstract base class for rendering providers.

    Implementations:
    - KieProvider: Kie.ai Veo API over httpx
    - StubProvider: Deterministic in-memory provider for local development
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name identifier."""
        ...

    @abstractmethod
    async def submit(self, request: UnitRenderRequest) -> str:
        """Start rendering a unit.

        Returns:
            Provider job id.

        Raises:
            ProviderError: If the provider refused the job
        """
        ...

    @abstractmethod
    async def poll(self, job_id: str) -> ProviderJobStatus:
        """Fetch the current state of a job.

        In-band job failures are returned as a FAILED status with error_kind
        set; transport or API failures raise ProviderError.
        """
        ...

    async def cancel(self, job_id: str) -> bool:
        """Best-effort cancellation of a running job.

        Returns:
            True if the provider acknowledged the cancellation. The default
            implementation cannot cancel and returns False; late results are
            then discarded by the executor.
        """
        return False

    async def close(self) -> None:
        """Release any network resources held by the provider."""
        return None
