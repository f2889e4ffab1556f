"""Session listing endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from pushtocode.server.api.routes.auth import require_api_key
from pushtocode.server.api.schemas import SessionListResponse, SessionResponse
from pushtocode.server.services import Session, get_supervisor
from pushtocode.server.services.session_store import SessionMetadata

router = APIRouter(dependencies=[Depends(require_api_key)])


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _session_to_response(session: Session, running: bool) -> SessionResponse:
    """Convert a live Session to a SessionResponse."""
    return SessionResponse(
        id=session.id,
        project_path=str(session.project_path),
        agent_conversation_id=session.agent_conversation_id,
        active=True,
        running=running,
        created_at=_timestamp(session.created_at),
        last_activity=_timestamp(session.last_activity_at),
    )


def _metadata_to_response(meta: SessionMetadata) -> SessionResponse:
    """Convert persisted metadata of a session that is not live."""
    return SessionResponse(
        id=meta.session_id,
        project_path=meta.project_path,
        agent_conversation_id=meta.agent_conversation_id,
        active=False,
        running=False,
        created_at=_timestamp(meta.created_at),
        last_activity=_timestamp(meta.last_activity_at),
    )


@router.get("", response_model=SessionListResponse)
async def list_sessions() -> SessionListResponse:
    """List live sessions followed by persisted ones that are not currently loaded."""
    supervisor = get_supervisor()
    responses = [
        _session_to_response(s, supervisor.is_running(s.id))
        for s in supervisor.registry.list_sessions()
    ]
    live_ids = {r.id for r in responses}
    if supervisor.store is not None:
        responses.extend(
            _metadata_to_response(meta)
            for meta in supervisor.store.list()
            if meta.session_id not in live_ids
        )
    return SessionListResponse(sessions=responses, total=len(responses))


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str) -> SessionResponse:
    """Get one session, live or persisted."""
    supervisor = get_supervisor()
    session = supervisor.get_session(session_id)
    if session is not None:
        return _session_to_response(session, supervisor.is_running(session_id))
    meta = supervisor.store.get(session_id) if supervisor.store is not None else None
    if meta is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return _metadata_to_response(meta)
