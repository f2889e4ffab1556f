"""API schemas."""

from .health import HealthResponse, StatusResponse
from .messages import CLIENT_MESSAGE_MODELS, ClientMessage, SessionMessage
from .session import SessionListResponse, SessionResponse

__all__ = [
    "HealthResponse",
    "StatusResponse",
    "CLIENT_MESSAGE_MODELS",
    "ClientMessage",
    "SessionMessage",
    "SessionListResponse",
    "SessionResponse",
]
