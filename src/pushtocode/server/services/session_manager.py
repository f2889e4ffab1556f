"""Session registry: the single authority on which sessions exist."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pushtocode.server.services.broadcast import SessionChannel
from pushtocode.server.services.pty_stream import ProcessHandle
from pushtocode.util.debounce import Debouncer

logger = logging.getLogger(__name__)

ProcessMode = Literal["interactive", "oneshot"]


@dataclass(eq=False)
class Session:
    """Per-session state.

    ``lock`` serializes every control operation on the session. At most one
    process is attached; ``attach`` kills the previous one before the new
    handle becomes visible.
    """

    id: str
    project_path: Path
    channel: SessionChannel = field(init=False)
    process: ProcessHandle | None = None
    mode: ProcessMode | None = None
    agent_conversation_id: str | None = None
    last_exit_code: int | None = None
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self) -> None:
        self.channel = SessionChannel(self.id)

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.is_alive

    @property
    def has_interactive_process(self) -> bool:
        return self.mode == "interactive" and self.is_running

    def touch(self) -> None:
        self.last_activity_at = time.time()

    def detach_process(self) -> ProcessHandle | None:
        """Kill and forget the attached process; its events are no longer published."""
        with self.lock:
            handle, self.process = self.process, None
            self.mode = None
            if handle is not None:
                handle.detached = True
        if handle is not None:
            handle.kill()
        return handle

    def attach(self, handle: ProcessHandle, mode: ProcessMode) -> None:
        with self.lock:
            if self.process is not None and self.process is not handle:
                self.detach_process()
            self.process = handle
            self.mode = mode
            self.touch()


class SessionRegistry:
    """Thread-safe map of session ID to Session."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def get_or_create(self, session_id: str, project_path: Path) -> tuple[Session, bool]:
        """Return the session, creating it if needed.

        Returns:
            (session, created)
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session, False
            session = Session(id=session_id, project_path=project_path)
            self._sessions[session_id] = session
        logger.info("Created session %s for %s", session_id, project_path)
        return session, True

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def contains(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def ids(self) -> list[str]:
        """Snapshot of session IDs, safe to iterate while sessions come and go."""
        with self._lock:
            return list(self._sessions)

    def list_sessions(self) -> list[Session]:
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.created_at, reverse=True)

    def idle_sessions(self, idle_timeout: float, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        with self._lock:
            return [
                sid for sid, s in self._sessions.items()
                if now - s.last_activity_at > idle_timeout
            ]

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def touch(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is not None:
            session.touch()


class InitGuard:
    """Marks sessions whose initialization is in flight.

    A marker is taken by ``begin`` and expires ``settle`` seconds after
    ``end``, or ``timeout`` seconds after ``begin`` if ``end`` never comes.
    While a marker is held, further ``begin`` calls for the session fail.
    """

    def __init__(self, timeout: float = 10.0, settle: float = 1.0):
        self.timeout = timeout
        self.settle = settle
        self._markers: dict[str, Debouncer] = {}
        self._lock = threading.Lock()

    def begin(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._markers:
                return False
            marker = Debouncer()
            self._markers[session_id] = marker
        marker.schedule(self.timeout, self._expire, session_id, marker)
        return True

    def end(self, session_id: str) -> None:
        with self._lock:
            marker = self._markers.get(session_id)
        if marker is not None:
            marker.schedule(self.settle, self._expire, session_id, marker)

    def in_flight(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._markers

    def clear(self, session_id: str) -> None:
        with self._lock:
            marker = self._markers.pop(session_id, None)
        if marker is not None:
            marker.cancel()

    def _expire(self, session_id: str, marker: Debouncer) -> None:
        with self._lock:
            if self._markers.get(session_id) is marker:
                del self._markers[session_id]
