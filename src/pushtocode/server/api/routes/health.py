"""Health and status endpoints."""

from fastapi import APIRouter

from pushtocode.server import __version__
from pushtocode.server.api.schemas import HealthResponse, StatusResponse
from pushtocode.server.services import get_supervisor
from pushtocode.server.state import get_uptime

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns server health status, version, and uptime.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        uptime_seconds=get_uptime(),
    )


@router.get("/status", response_model=StatusResponse)
async def get_status() -> StatusResponse:
    """Status endpoint reporting version, sessions and agent login state."""
    supervisor = get_supervisor()
    session_ids = supervisor.registry.ids()
    return StatusResponse(
        version=__version__,
        status="running",
        uptime_seconds=get_uptime(),
        sessions=len(session_ids),
        running_sessions=sum(1 for sid in session_ids if supervisor.is_running(sid)),
        authenticated=supervisor.auth.is_authenticated,
        pending_login_url=supervisor.auth.pending_url(),
    )
