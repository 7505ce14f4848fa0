"""Shared exceptions for the orchestrator.

This module contains exception classes used across multiple services
to avoid cross-domain dependencies between services. Provider-native
failures are translated into ``ProviderError`` at the provider boundary
(see ``bulkgen.providers.base``) and never travel past the row executor.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Closed taxonomy of row-level failure kinds.

    Every provider response, ledger failure or executor fault is classified
    into one of these before it is persisted on a row or unit.
    """

    CREDIT_EXHAUSTED = "CREDIT_EXHAUSTED"
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_PARAMS = "INVALID_PARAMS"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    CANCELLED = "CANCELLED"


class StitchRejectionKind(str, Enum):
    """Reasons a stitch request is rejected synchronously."""

    INSUFFICIENT_INPUTS = "INSUFFICIENT_INPUTS"
    ALREADY_STITCHED = "ALREADY_STITCHED"
    STITCH_IN_PROGRESS = "STITCH_IN_PROGRESS"


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents the
    orchestrator from starting (e.g., Kie provider selected without an API
    key, or Cloudinary stitching requested without credentials).
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when attempting a transition not allowed by a VALID_TRANSITIONS table.

    Batches, rows, units, stitch targets and credit reservations each declare
    their legal transitions; the ORM ``@validates("status")`` hooks raise this
    error for anything else. Service-level guards (resume on a running batch,
    abort on a cancelled batch) raise it too, so callers see one error type
    for "not allowed in the current state".

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current status before the attempted transition.
        to_status: The status that was attempted but is not valid.

    Example:
        >>> batch.status = BatchStatus.DRAFT
        >>> batch.status = BatchStatus.COMPLETED  # Invalid - nothing ran
        InvalidStateTransitionError: Invalid transition: draft → completed
    """

    def __init__(self, message: str, from_status: Enum, to_status: Enum):
        """Initialize InvalidStateTransitionError with transition details.

        Args:
            message: Human-readable error message.
            from_status: Current status before transition attempt.
            to_status: Target status that was attempted.
        """
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        """Return detailed error message with transition context."""
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class BatchNotFoundError(LookupError):
    """Raised when a batch id does not exist."""


class RowNotFoundError(LookupError):
    """Raised when a row id does not exist."""


class InvalidBatchError(ValueError):
    """Raised when a launch request is malformed (no rows, empty units...)."""


class NothingToRetryError(Exception):
    """Raised by retry_failed when the batch has no failed rows."""


class InsufficientBalanceError(Exception):
    """Raised when a reservation would exceed the user's available balance.

    Attributes:
        user_id: Account that was short.
        requested: Credits the caller tried to reserve.
        available: Credits available at the time of the request.
    """

    def __init__(self, user_id: str, requested: int, available: int):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient credits for {user_id}: requested {requested}, available {available}"
        )


class ReservationStateError(Exception):
    """Raised when a reservation cannot be settled in its current state."""


class StitchRejectedError(Exception):
    """Raised when a stitch request is refused without changing any state.

    Attributes:
        kind: StitchRejectionKind explaining the refusal.
    """

    def __init__(self, kind: StitchRejectionKind, message: str):
        self.kind = kind
        super().__init__(message)
