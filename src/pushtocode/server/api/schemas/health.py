"""Health and status Pydantic schemas."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(default="healthy", description="Server health status")
    version: str = Field(description="Server version")
    uptime_seconds: float = Field(description="Server uptime in seconds")


class StatusResponse(BaseModel):
    """Response model for status endpoint."""

    version: str = Field(description="Server version")
    status: str = Field(default="running", description="Server status")
    uptime_seconds: float = Field(description="Server uptime in seconds")
    sessions: int = Field(default=0, description="Sessions currently in the registry")
    running_sessions: int = Field(default=0, description="Sessions with a live agent process")
    authenticated: bool = Field(default=False, description="Whether the agent CLI is logged in")
    pending_login_url: str | None = Field(default=None, description="Login URL awaiting the user")
