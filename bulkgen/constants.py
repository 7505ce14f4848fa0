"""Project-wide constants and mappings.

This module contains the user-facing guidance attached to each row error kind,
so status queries can tell a caller whether to retry, fix the row, top up
credits or contact support.
"""

from bulkgen.exceptions import ErrorKind

# Error kind → suggested next step for the person who launched the batch
ERROR_USER_ACTIONS: dict[ErrorKind, str] = {
    ErrorKind.CREDIT_EXHAUSTED: "Add more credits to continue, then retry failed rows.",
    ErrorKind.RATE_LIMITED: "The provider is busy. Wait a few minutes and retry failed rows.",
    ErrorKind.AUTH_ERROR: "Provider credentials were rejected. Contact support.",
    ErrorKind.INVALID_PARAMS: "Fix the row's prompt or settings and resubmit it.",
    ErrorKind.TIMEOUT: "Rendering took too long. Retry failed rows.",
    ErrorKind.PROVIDER_ERROR: "The provider failed unexpectedly. Retry failed rows or contact support.",
    ErrorKind.CANCELLED: "The batch was aborted before this row finished.",
}

# Error kinds the row executor retries automatically, with total attempts
# (None means "use the configured MAX_UNIT_ATTEMPTS")
RETRYABLE_ERROR_ATTEMPTS: dict[ErrorKind, int | None] = {
    ErrorKind.RATE_LIMITED: None,
    ErrorKind.PROVIDER_ERROR: None,
    ErrorKind.TIMEOUT: 2,  # retried once, then fatal
}

# Minimum completed inputs for any stitch
MIN_STITCH_INPUTS = 2

# Longest error text persisted on a row/unit
MAX_ERROR_MESSAGE_LENGTH = 2000
