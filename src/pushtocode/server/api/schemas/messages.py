"""Pydantic schemas for client -> server WebSocket messages.

Wire field names are camelCase; models accept either the alias or the
Python field name.
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ClientMessage(BaseModel):
    """Common envelope: every message carries a ``type`` discriminator."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(description="Message type")


class SessionMessage(ClientMessage):
    """A message addressed to one session."""

    session_id: str = Field(alias="sessionId", min_length=1, description="Client-generated session ID")


class StartInteractiveMessage(SessionMessage):
    project_path: str | None = Field(default=None, alias="projectPath", description="Working directory")


class ResumeSessionMessage(SessionMessage):
    project_path: str | None = Field(default=None, alias="projectPath", description="Working directory")


class DestroySessionMessage(SessionMessage):
    pass


class InitSessionMessage(SessionMessage):
    project_id: str | None = Field(default=None, alias="projectId", description="Project identifier")
    project_path: str | None = Field(default=None, alias="projectPath", description="Working directory")


class ExecuteMessage(SessionMessage):
    prompt: str = Field(min_length=1, description="Prompt for a one-shot agent run")
    project_path: str | None = Field(default=None, alias="projectPath", description="Working directory")


class StopMessage(SessionMessage):
    pass


class PtyInputMessage(SessionMessage):
    data: str = Field(
        validation_alias=AliasChoices("data", "input"),
        description="Text to write to the PTY (UTF-8 encoded before writing)",
    )


class ResizeMessage(SessionMessage):
    cols: int = Field(ge=1, le=1000, description="Terminal columns")
    rows: int = Field(ge=1, le=1000, description="Terminal rows")


class UploadFileMessage(SessionMessage):
    filename: str = Field(min_length=1, description="Original file name")
    mime_type: str = Field(
        default="application/octet-stream", alias="mimeType", description="MIME type"
    )
    data: str = Field(description="Base64 encoded file content")


class SubmitAuthCodeMessage(ClientMessage):
    code: str = Field(default="", description="Authorization code pasted by the user")


CLIENT_MESSAGE_MODELS: dict[str, type[ClientMessage]] = {
    "start_interactive": StartInteractiveMessage,
    "resume_session": ResumeSessionMessage,
    "destroy_session": DestroySessionMessage,
    "init_session": InitSessionMessage,
    "execute": ExecuteMessage,
    "stop": StopMessage,
    "pty_input": PtyInputMessage,
    "resize": ResizeMessage,
    "upload_file": UploadFileMessage,
    "submit_auth_code": SubmitAuthCodeMessage,
    "login": ClientMessage,
    "ping": ClientMessage,
    "pong": ClientMessage,
}
