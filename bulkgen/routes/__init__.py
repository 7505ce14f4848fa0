"""HTTP routes for the orchestrator API."""

from fastapi import Request

from bulkgen.services.orchestrator import BatchOrchestrator


def get_orchestrator(request: Request) -> BatchOrchestrator:
    """FastAPI dependency returning the orchestrator built by the app lifespan."""
    return request.app.state.orchestrator
