"""Session-related Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class SessionResponse(BaseModel):
    """A session known to the server, live or persisted."""

    id: str = Field(description="Client-generated session identifier")
    project_path: str | None = Field(default=None, description="Working directory")
    agent_conversation_id: str | None = Field(
        default=None, description="Agent conversation to resume on the next run"
    )
    active: bool = Field(default=False, description="Whether the session is in the live registry")
    running: bool = Field(default=False, description="Whether an agent process is running")
    created_at: datetime = Field(description="When the session was created")
    last_activity: datetime = Field(description="When the session was last active")


class SessionListResponse(BaseModel):
    """Response model for listing sessions."""

    sessions: list[SessionResponse] = Field(default_factory=list)
    total: int = Field(description="Total number of sessions")
