"""Exceptions raised inside the services layer.

The protocol handler converts these into ``error`` messages; nothing here is
allowed to escape to the WebSocket loop.
"""


class SessionNotFoundError(LookupError):
    """No session with the given ID is registered."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class ProcessSpawnError(RuntimeError):
    """The agent CLI could not be started."""


class UploadError(ValueError):
    """An uploaded file was rejected."""


# Wire error codes
UNAUTHORIZED = "UNAUTHORIZED"
INVALID_MESSAGE = "INVALID_MESSAGE"
UNKNOWN_TYPE = "UNKNOWN_TYPE"
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
NO_ACTIVE_PTY = "NO_ACTIVE_PTY"
INIT_FAILED = "INIT_FAILED"
EXECUTE_FAILED = "EXECUTE_FAILED"
EXECUTION_ERROR = "EXECUTION_ERROR"
STOP_FAILED = "STOP_FAILED"
START_INTERACTIVE_FAILED = "START_INTERACTIVE_FAILED"
UPLOAD_FAILED = "UPLOAD_FAILED"
LOGIN_FAILED = "LOGIN_FAILED"
AUTH_FAILED = "AUTH_FAILED"
CODE_SUBMIT_FAILED = "CODE_SUBMIT_FAILED"
INVALID_CODE = "INVALID_CODE"

SESSION_NOT_FOUND_MESSAGE = "Session not found"
NO_ACTIVE_PTY_MESSAGE = "No active PTY session"
