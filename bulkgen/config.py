"""Configuration management for the batch orchestrator.

This module provides centralized configuration loading from environment variables.
Getter functions read the environment on each call (except the database URL,
which is cached) so tests can override values with monkeypatch.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    MAX_CONCURRENT_ROWS: Worker pool size, rows in progress at once (default: 5)
    TEST_RUN_SIZE: Rows admitted by a staged launch (default: 3)
    CREDITS_PER_MINUTE: Credits charged per rendered minute (default: 7.5)
    RENDER_PROVIDER: "kie" or "stub" (default: kie)
    KIE_API_KEY: Bearer token for the Kie.ai API (required when provider is kie)

Usage:
    from bulkgen.config import get_orchestrator_settings

    settings = get_orchestrator_settings()
    pool = RowWorkerPool(settings.max_concurrent_rows, ...)
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache

import structlog

from bulkgen.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENT_ROWS = 5
DEFAULT_TEST_RUN_SIZE = 3
DEFAULT_CREDITS_PER_MINUTE = Decimal("7.5")  # one 8-second unit == 1 credit
DEFAULT_UNIT_SECONDS = 8
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_UNIT_TIMEOUT_SECONDS = 900.0
DEFAULT_MAX_UNIT_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0
DEFAULT_KIE_BASE_URL = "https://api.kie.ai"


def _clamped_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return max(minimum, min(maximum, int(raw)))
    except ValueError:
        log.warning("invalid_int_setting", setting=name, value=raw, using_default=default)
        return default


def _clamped_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return max(minimum, min(maximum, float(raw)))
    except ValueError:
        log.warning("invalid_float_setting", setting=name, value=raw, using_default=default)
        return default


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    # Hosted Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_max_concurrent_rows() -> int:
    """Get the worker pool size (rows simultaneously in progress).

    Environment Variable:
        MAX_CONCURRENT_ROWS: Maximum parallel rows (default: 5, range 1-50)

    Note:
        The limit is process-wide. Each row renders its units sequentially,
        so this is also the upper bound on concurrent provider jobs.
    """
    return _clamped_int("MAX_CONCURRENT_ROWS", DEFAULT_MAX_CONCURRENT_ROWS, 1, 50)


def get_test_run_size() -> int:
    """Get the number of rows a staged launch runs before pausing for review."""
    return _clamped_int("TEST_RUN_SIZE", DEFAULT_TEST_RUN_SIZE, 1, 100)


def get_credits_per_minute() -> Decimal:
    """Get the credit price of one rendered minute.

    Environment Variable:
        CREDITS_PER_MINUTE: Decimal credits per minute (default: 7.5)

    Returns:
        Positive Decimal. Invalid or non-positive values fall back to the default.
    """
    raw = os.getenv("CREDITS_PER_MINUTE", str(DEFAULT_CREDITS_PER_MINUTE))
    try:
        value = Decimal(raw)
    except InvalidOperation:
        value = Decimal(0)
    if value <= 0:
        log.warning("invalid_credits_per_minute", value=raw, using_default=str(DEFAULT_CREDITS_PER_MINUTE))
        return DEFAULT_CREDITS_PER_MINUTE
    return value


def get_default_unit_seconds() -> int:
    """Get the estimated duration of a unit when the row does not specify one."""
    return _clamped_int("DEFAULT_UNIT_SECONDS", DEFAULT_UNIT_SECONDS, 1, 600)


def get_poll_interval_seconds() -> float:
    """Get the delay between provider status polls (0.01s - 300s)."""
    return _clamped_float("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, 0.01, 300.0)


def get_unit_timeout_seconds() -> float:
    """Get the bound on a single unit render attempt before it is a TIMEOUT."""
    return _clamped_float("UNIT_TIMEOUT_SECONDS", DEFAULT_UNIT_TIMEOUT_SECONDS, 1.0, 7200.0)


def get_max_unit_attempts() -> int:
    """Get total attempts per unit for RATE_LIMITED / PROVIDER_ERROR (1-10)."""
    return _clamped_int("MAX_UNIT_ATTEMPTS", DEFAULT_MAX_UNIT_ATTEMPTS, 1, 10)


def get_retry_backoff_seconds() -> float:
    """Get the exponential backoff multiplier between unit attempts."""
    return _clamped_float("RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS, 0.0, 60.0)


def get_retry_backoff_max_seconds() -> float:
    """Get the cap on a single backoff delay."""
    return _clamped_float(
        "RETRY_BACKOFF_MAX_SECONDS", DEFAULT_RETRY_BACKOFF_MAX_SECONDS, 0.0, 600.0
    )


def get_render_provider() -> str:
    """Get the rendering provider name ("kie" or "stub")."""
    return os.getenv("RENDER_PROVIDER", "kie").strip().lower()


def get_kie_api_key() -> str:
    """Get the Kie.ai API key.

    Raises:
        ConfigurationError: If KIE_API_KEY is not set.
    """
    api_key = os.getenv("KIE_API_KEY")
    if not api_key:
        raise ConfigurationError("KIE_API_KEY environment variable is required for the kie provider")
    return api_key


def get_kie_base_url() -> str:
    """Get the Kie.ai API base URL (override for sandboxes)."""
    return os.getenv("KIE_BASE_URL", DEFAULT_KIE_BASE_URL).rstrip("/")


def get_kie_callback_url() -> str | None:
    """Get the public URL Kie.ai should call when a job finishes (optional).

    When unset the executor relies on polling alone.
    """
    return os.getenv("KIE_CALLBACK_URL") or None


def get_callback_token() -> str | None:
    """Get the shared secret expected on provider callback requests."""
    return os.getenv("CALLBACK_TOKEN") or None


def get_cloudinary_credentials() -> tuple[str, str, str] | None:
    """Get (cloud_name, api_key, api_secret) for Cloudinary stitching.

    Returns:
        Tuple of credentials, or None when any of them is missing.
    """
    cloud_name = os.getenv("CLOUDINARY_CLOUD_NAME")
    api_key = os.getenv("CLOUDINARY_API_KEY")
    api_secret = os.getenv("CLOUDINARY_API_SECRET")
    if not (cloud_name and api_key and api_secret):
        return None
    return cloud_name, api_key, api_secret


@dataclass(frozen=True)
class OrchestratorSettings:
    """Runtime knobs for the orchestrator, collected in one place.

    Tests build this directly with tiny intervals; production uses from_env().
    """

    max_concurrent_rows: int = DEFAULT_MAX_CONCURRENT_ROWS
    test_run_size: int = DEFAULT_TEST_RUN_SIZE
    credits_per_minute: Decimal = DEFAULT_CREDITS_PER_MINUTE
    default_unit_seconds: int = DEFAULT_UNIT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    unit_timeout_seconds: float = DEFAULT_UNIT_TIMEOUT_SECONDS
    max_unit_attempts: int = DEFAULT_MAX_UNIT_ATTEMPTS
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        return cls(
            max_concurrent_rows=get_max_concurrent_rows(),
            test_run_size=get_test_run_size(),
            credits_per_minute=get_credits_per_minute(),
            default_unit_seconds=get_default_unit_seconds(),
            poll_interval_seconds=get_poll_interval_seconds(),
            unit_timeout_seconds=get_unit_timeout_seconds(),
            max_unit_attempts=get_max_unit_attempts(),
            retry_backoff_seconds=get_retry_backoff_seconds(),
            retry_backoff_max_seconds=get_retry_backoff_max_seconds(),
        )


def get_orchestrator_settings() -> OrchestratorSettings:
    """Build OrchestratorSettings from the current environment."""
    return OrchestratorSettings.from_env()
