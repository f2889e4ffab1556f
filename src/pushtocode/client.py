"""Reference client for the session protocol.

``ClientSession`` holds the per-session reaction logic (what to send in
response to each server message) without doing any I/O, so it can be tested
directly. ``ReconnectingClient`` drives it over a ``websockets`` connection,
resuming the session every time the connection is re-established.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.sync.client import ClientConnection, connect

logger = logging.getLogger(__name__)

REINIT_ERROR_CODES = {"NO_ACTIVE_PTY", "SESSION_NOT_FOUND"}

ScreenCallback = Callable[[str], None]


@dataclass
class ClientSession:
    """Client half of the resume protocol for a single session."""

    session_id: str
    project_path: str | None = None
    state: str = "no_session"
    is_running: bool = False
    screen: str = ""
    auth_url: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)

    def _msg(self, msg_type: str, **fields: Any) -> dict[str, Any]:
        message = {"type": msg_type, "sessionId": self.session_id}
        message.update(fields)
        return message

    def on_connect(self) -> list[dict[str, Any]]:
        """Messages to send right after (re)connecting."""
        self.state = "resuming"
        return [self._msg("resume_session", projectPath=self.project_path)]

    def start(self) -> dict[str, Any]:
        self.state = "starting"
        return self._msg("start_interactive", projectPath=self.project_path)

    def input(self, text: str) -> dict[str, Any]:
        return self._msg("pty_input", data=text)

    def resize(self, cols: int, rows: int) -> dict[str, Any]:
        return self._msg("resize", cols=cols, rows=rows)

    def react(self, message: dict[str, Any]) -> list[dict[str, Any]]:
        """Update local state from a server message and return the replies to send."""
        msg_type = message.get("type")
        sid = message.get("sessionId")

        if msg_type == "ping":
            return [{"type": "pong"}]
        if msg_type == "auth_required":
            self.auth_url = message.get("authUrl")
            return []
        if msg_type == "auth_success":
            self.auth_url = None
            return []
        if sid not in (None, "", self.session_id):
            return []

        if msg_type == "session_not_found":
            return [self.start()]
        if msg_type == "session_resumed":
            self.state = "ready"
            self.is_running = bool(message.get("isRunning"))
            self._apply_buffer(message.get("buffer"))
            return []
        if msg_type == "session_ready":
            self.state = "ready"
            return []
        if msg_type == "terminal_buffer":
            self._apply_buffer(message.get("buffer"))
            return []
        if msg_type == "status":
            self.is_running = message.get("status") == "running"
            return []
        if msg_type == "session_destroyed":
            self.state = "no_session"
            self.is_running = False
            return []
        if msg_type == "error":
            self.errors.append(message)
            if message.get("code") in REINIT_ERROR_CODES and self.state != "starting":
                self.state = "no_session"
                return [self.start()]
            return []
        return []

    def _apply_buffer(self, buffer: dict[str, Any] | None) -> None:
        if buffer:
            self.screen = buffer.get("ansiContent", "")


class ReconnectingClient:
    """Keeps one session mirrored over a WebSocket, reconnecting with backoff."""

    def __init__(
        self,
        url: str,
        api_key: str,
        session_id: str,
        project_path: str | None = None,
        on_screen: ScreenCallback | None = None,
        max_backoff: float = 30.0,
    ):
        self.url = url
        self.api_key = api_key
        self.session = ClientSession(session_id, project_path)
        self.on_screen = on_screen
        self.max_backoff = max_backoff
        self._conn: ClientConnection | None = None
        self._send_lock = threading.Lock()
        self._stop = threading.Event()

    def send(self, message: dict[str, Any]) -> bool:
        """Send a message if connected. Returns False when offline."""
        conn = self._conn
        if conn is None:
            return False
        try:
            with self._send_lock:
                conn.send(json.dumps(message))
            return True
        except ConnectionClosed:
            return False

    def send_input(self, text: str) -> bool:
        return self.send(self.session.input(text))

    def send_resize(self, cols: int, rows: int) -> bool:
        return self.send(self.session.resize(cols, rows))

    def close(self) -> None:
        self._stop.set()
        conn = self._conn
        if conn is not None:
            conn.close()

    def run(self) -> None:
        """Connect, resume and mirror the session until ``close`` is called."""
        backoff = 1.0
        while not self._stop.is_set():
            try:
                with connect(self.url, additional_headers={"x-api-key": self.api_key}) as conn:
                    self._conn = conn
                    backoff = 1.0
                    logger.info("Connected to %s", self.url)
                    for message in self.session.on_connect():
                        self.send(message)
                    self._receive_loop(conn)
            except (OSError, InvalidHandshake, ConnectionClosed) as exc:
                logger.warning("Connection to %s lost: %s", self.url, exc)
            finally:
                self._conn = None
            if self._stop.wait(backoff):
                break
            backoff = min(backoff * 2, self.max_backoff)

    def _receive_loop(self, conn: ClientConnection) -> None:
        for raw in conn:
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON message from server")
                continue
            before = self.session.screen
            for reply in self.session.react(message):
                self.send(reply)
            if message.get("type") == "error":
                logger.warning("Server error %s: %s", message.get("code"), message.get("message"))
            if message.get("type") == "auth_required" and self.session.auth_url:
                logger.warning("Agent login required: %s", self.session.auth_url)
            if self.on_screen is not None and self.session.screen != before:
                self.on_screen(self.session.screen)
            if message.get("code") == "UNAUTHORIZED":
                logger.error("API key rejected by server")
                self._stop.set()
                return


def render_to_terminal(write: Callable[[str], Any]) -> ScreenCallback:
    """Screen callback that repaints a local terminal from home position."""

    def paint(ansi: str) -> None:
        write("\x1b[H\x1b[2J" + ansi.replace("\n", "\r\n"))

    return paint

