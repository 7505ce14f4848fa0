"""FastAPI application for the bulk video generation orchestrator.

Startup builds the orchestrator from the environment (database, pgqueuer row
queue, rendering provider, optional Cloudinary stitcher), starts row dispatch
and resumes rows left in flight by a previous process.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from bulkgen.config import (
    get_cloudinary_credentials,
    get_database_url,
    get_orchestrator_settings,
)
from bulkgen.exceptions import (
    BatchNotFoundError,
    ConfigurationError,
    InvalidBatchError,
    InvalidStateTransitionError,
    NothingToRetryError,
    RowNotFoundError,
    StitchRejectedError,
)
from bulkgen.providers import create_provider_from_env
from bulkgen.queue import QueueConnection, initialize_pgqueuer, is_postgres_url
from bulkgen.routes import batches, callbacks
from bulkgen.services.orchestrator import BatchOrchestrator
from bulkgen.stitchers.cloudinary import CloudinaryStitcher
from bulkgen.utils.logging import configure_logging

log = structlog.get_logger()

# Domain error → (HTTP status, error code)
ERROR_STATUS_CODES: dict[type[Exception], tuple[int, str]] = {
    BatchNotFoundError: (status.HTTP_404_NOT_FOUND, "not_found"),
    RowNotFoundError: (status.HTTP_404_NOT_FOUND, "not_found"),
    InvalidStateTransitionError: (status.HTTP_409_CONFLICT, "invalid_state"),
    NothingToRetryError: (status.HTTP_409_CONFLICT, "nothing_to_retry"),
    StitchRejectedError: (status.HTTP_409_CONFLICT, "stitch_rejected"),
    InvalidBatchError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_batch"),
    ConfigurationError: (status.HTTP_503_SERVICE_UNAVAILABLE, "not_configured"),
}


async def build_orchestrator() -> BatchOrchestrator:
    """Build the orchestrator from environment configuration.

    PostgreSQL databases get a pgqueuer row queue; any other database runs
    rows on the in-process worker pool.

    Raises:
        ConfigurationError: If DATABASE_URL is unset or the provider is misconfigured
    """
    from bulkgen.database import async_session_factory

    if async_session_factory is None:
        raise ConfigurationError("DATABASE_URL environment variable is not set")

    credentials = get_cloudinary_credentials()
    stitcher = CloudinaryStitcher(*credentials) if credentials else None
    if stitcher is None:
        log.warning(
            "stitching_disabled",
            message="Cloudinary credentials not set, stitch requests will return 503",
        )
    provider = create_provider_from_env()

    queue: QueueConnection | None = None
    if is_postgres_url(get_database_url()):
        queue = await initialize_pgqueuer(get_database_url())
    else:
        log.warning(
            "row_queue_in_process",
            message="Database is not PostgreSQL, rows run on the in-process worker pool",
        )
    return BatchOrchestrator(
        async_session_factory,
        provider=provider,
        stitcher=stitcher,
        settings=get_orchestrator_settings(),
        queue=queue,
    )


async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
    status_code, error = next(
        (value for exc_type, value in ERROR_STATUS_CODES.items() if isinstance(exc, exc_type)),
        (status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"),
    )
    kind = getattr(exc, "kind", None)
    log.info(
        "request_rejected",
        path=request.url.path,
        status_code=status_code,
        error=error,
        detail=str(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "detail": str(exc),
            "kind": kind.value if kind is not None else None,
        },
    )


def create_app(orchestrator: BatchOrchestrator | None = None) -> FastAPI:
    """Create the API application.

    Args:
        orchestrator: Pre-built orchestrator. When given, its lifecycle is
            owned by the caller; otherwise one is built from the environment
            at startup and shut down with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = orchestrator is None
        if owned:
            configure_logging()
            app.state.orchestrator = await build_orchestrator()
            await app.state.orchestrator.start()
        else:
            app.state.orchestrator = orchestrator

        yield

        if owned:
            log.info("shutting_down_orchestrator")
            await app.state.orchestrator.shutdown()

    app = FastAPI(
        title="Bulk Video Generation Orchestrator",
        description=(
            "Staged, resumable, billable batch rendering of generation rows with stitching"
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    for exc_type in ERROR_STATUS_CODES:
        app.add_exception_handler(exc_type, handle_domain_error)

    app.include_router(batches.router)
    app.include_router(callbacks.router)

    @app.get("/health", status_code=status.HTTP_200_OK)
    async def health_check(request: Request) -> JSONResponse:
        """Health check with worker pool occupancy.

        Returns:
            JSONResponse: Status and pool statistics
        """
        current: BatchOrchestrator | None = getattr(request.app.state, "orchestrator", None)
        pool = current.pool if current is not None else None
        return JSONResponse(
            content={
                "status": "healthy",
                "service": "bulkgen",
                "provider": current.provider.name if current is not None else None,
                "workers": pool.size if pool is not None else 0,
                "active_rows": pool.active_rows if pool is not None else 0,
                "queued_rows": pool.queued_rows if pool is not None else 0,
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "bulkgen.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
