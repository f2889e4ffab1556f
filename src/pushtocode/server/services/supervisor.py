"""Process supervision for agent sessions.

The supervisor spawns the agent CLI for a session (interactive under a PTY,
or one-shot with stream-json output), feeds PTY output into the session's
terminal buffer, classifies one-shot output, and publishes everything as
SessionEvents on the session's channel. Process problems never raise out of
here; they become ``error`` and ``exit`` events.

All methods are blocking and thread-safe; the WebSocket layer calls them via
``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path

from pushtocode.server.services.auth_flow import (
    AuthFlowState,
    LoginFlow,
    LoginResult,
    extract_auth_url,
    has_success_marker,
)
from pushtocode.server.services.broadcast import SessionChannel, SessionEvent
from pushtocode.server.services.errors import (
    AUTH_FAILED,
    EXECUTION_ERROR,
    ProcessSpawnError,
    SessionNotFoundError,
)
from pushtocode.server.services.output_classifier import (
    LineBuffer,
    SpinnerFilter,
    classify_line,
    strip_ansi_and_control,
)
from pushtocode.server.services.pty_stream import ProcessHandle
from pushtocode.server.services.session_manager import Session, SessionRegistry
from pushtocode.server.services.session_store import SessionMetadataStore
from pushtocode.server.services.terminal_buffer import (
    TerminalBufferService,
    TerminalBufferSnapshot,
)
from pushtocode.util.config import Settings
from pushtocode.util.process_registry import ProcessRegistry

logger = logging.getLogger(__name__)

SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"
STARTUP_OUTPUT_TIMEOUT = 30.0

INTERACTIVE_ENV = {"TERM": "xterm-256color", "FORCE_COLOR": "1"}
ONESHOT_ENV = {"FORCE_COLOR": "0", "CI": "1"}


class SessionSupervisor:
    """Owns every agent process and the shared authentication state."""

    def __init__(
        self,
        settings: Settings,
        registry: SessionRegistry | None = None,
        buffers: TerminalBufferService | None = None,
        auth: AuthFlowState | None = None,
        store: SessionMetadataStore | None = None,
        process_registry: ProcessRegistry | None = None,
    ):
        self.settings = settings
        self.registry = registry or SessionRegistry()
        self.buffers = buffers or TerminalBufferService(
            throttle_ms=settings.snapshot_throttle_ms,
            scrollback=settings.scrollback_lines,
        )
        self.auth = auth or AuthFlowState()
        self.store = store
        self.process_registry = process_registry
        # Session-independent events (login outcome) for every connection
        self.global_channel = SessionChannel("")
        self.login = LoginFlow(
            self.auth,
            settings.agent_argv,
            Path(settings.default_workdir),
            url_timeout=settings.login_url_timeout,
            cols=settings.terminal_cols,
            rows=settings.terminal_rows,
            registry=process_registry,
            listener=self._on_login_event,
        )

    # ------------------------------------------------------------------
    # Session bookkeeping
    # ------------------------------------------------------------------

    def open_session(self, session_id: str, project_path: str | None) -> Session:
        """Get or create a session, restoring its conversation ID if one was persisted."""
        workdir = self.settings.resolve_workdir(project_path)
        session, created = self.registry.get_or_create(session_id, workdir)
        if created and self.store is not None:
            meta = self.store.get(session_id)
            if meta is not None and meta.agent_conversation_id:
                session.agent_conversation_id = meta.agent_conversation_id
                logger.info("Restored conversation %s for session %s",
                            meta.agent_conversation_id, session_id)
        if not created and project_path:
            session.project_path = workdir
        session.touch()
        self._persist(session)
        return session

    def init_session(self, session_id: str, project_path: str | None) -> Session:
        return self.open_session(session_id, project_path)

    def get_session(self, session_id: str) -> Session | None:
        return self.registry.get(session_id)

    def is_running(self, session_id: str) -> bool:
        session = self.registry.get(session_id)
        return session is not None and self._process_active(session)

    @staticmethod
    def _process_active(session: Session) -> bool:
        handle = session.process
        return handle is not None and handle.is_alive and not handle.stop_requested

    def _persist(self, session: Session) -> None:
        if self.store is None:
            return
        try:
            self.store.upsert(
                session.id,
                agent_conversation_id=session.agent_conversation_id,
                project_path=str(session.project_path),
            )
        except OSError as exc:
            logger.warning("Could not persist session %s: %s", session.id, exc)

    def _publish(self, session: Session, event_type: str, **fields) -> None:
        session.channel.publish(SessionEvent(type=event_type, session_id=session.id, **fields))

    def _resume_args(self, session: Session) -> list[str]:
        if session.agent_conversation_id:
            logger.info("Resuming conversation %s", session.agent_conversation_id)
            return ["--resume", session.agent_conversation_id]
        return []

    # ------------------------------------------------------------------
    # Interactive sessions
    # ------------------------------------------------------------------

    def start_interactive(self, session_id: str, project_path: str | None) -> bool:
        """Spawn the agent in a PTY for the session, replacing any current process.

        The current process is killed first in every case. Returns False when
        nothing was spawned: a login URL is pending (an ``auth_required`` event
        is published instead) or the executable could not be started.
        """
        session = self.open_session(session_id, project_path)
        with session.lock:
            previous = session.detach_process()
            pending = self.auth.pending_url()
            if pending:
                if previous is not None and not previous.stop_requested:
                    # Its own exit is suppressed by the detach
                    self._publish(session, "exit", exit_code=None)
                self._publish(session, "auth_required", auth_url=pending,
                              content="Agent CLI requires authentication")
                return False

            cols, rows = self.settings.terminal_cols, self.settings.terminal_rows
            self.buffers.create_buffer(session_id, cols, rows)
            spinner = SpinnerFilter()

            handle = ProcessHandle(
                self.settings.agent_argv + [SKIP_PERMISSIONS_FLAG] + self._resume_args(session),
                session.project_path,
                INTERACTIVE_ENV,
                use_pty=True,
                cols=cols,
                rows=rows,
                on_output=lambda h, data: self._on_pty_output(session, h, data, spinner),
                on_exit=lambda h, code: self._on_exit(session, h, code),
                registry=self.process_registry,
                description=f"agent session {session_id}",
            )
            self._publish(session, "started")
            try:
                handle.start()
            except ProcessSpawnError as exc:
                logger.error("Could not start interactive session %s: %s", session_id, exc)
                self._publish(session, "error", content=str(exc), code=EXECUTION_ERROR)
                self._publish(session, "exit", exit_code=None)
                return False
            session.attach(handle, "interactive")
        return True

    def _on_pty_output(
        self,
        session: Session,
        handle: ProcessHandle,
        data: bytes,
        spinner: SpinnerFilter,
    ) -> None:
        with session.lock:
            if handle.detached:
                return
            session.touch()
            self.buffers.write(session.id, data)

        text = strip_ansi_and_control(data.decode("utf-8", errors="replace"))
        if spinner.should_log(text) and text.strip():
            logger.debug("[%s] %.200s", session.id, text.strip())

        url = extract_auth_url(text)
        if url and self.auth.require_login(url):
            self._publish(session, "auth_required", auth_url=url,
                          content="Agent CLI requires authentication")
        if has_success_marker(text) and self.auth.mark_authenticated():
            self._publish(session, "auth_success", content="Authentication successful")

        self.buffers.get_snapshot_throttled(
            session.id,
            lambda snapshot: self._publish_snapshot(session, handle, snapshot),
        )

    def _publish_snapshot(
        self,
        session: Session,
        handle: ProcessHandle,
        snapshot: TerminalBufferSnapshot,
    ) -> None:
        if handle.detached:
            return
        self._publish(session, "terminal_buffer", buffer=snapshot.to_dict())

    def send_input(self, session_id: str, data: bytes) -> bool:
        """Write to the session's interactive PTY. False if there is none."""
        session = self.registry.get(session_id)
        if session is None:
            return False
        with session.lock:
            if not session.has_interactive_process:
                return False
            session.touch()
            return session.process.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self.registry.get(session_id)
        if session is None:
            return False
        with session.lock:
            resized = self.buffers.resize(session_id, cols, rows)
            if session.has_interactive_process:
                resized = session.process.resize(cols, rows) or resized
        if resized:
            snapshot = self.buffers.get_snapshot(session_id)
            if snapshot is not None:
                self._publish(session, "terminal_buffer", buffer=snapshot.to_dict())
        return resized

    def resume_snapshot(self, session_id: str) -> tuple[dict, bool] | None:
        """Current screen of a session for a reconnecting client.

        Returns:
            (buffer dict, is_running), or None if the session does not exist
        """
        session = self.registry.get(session_id)
        if session is None:
            return None
        session.touch()
        snapshot = self.buffers.get_snapshot(session_id, force=True)
        if snapshot is None:
            snapshot = TerminalBufferSnapshot.empty(
                self.settings.terminal_cols, self.settings.terminal_rows
            )
        return snapshot.to_dict(), self._process_active(session)

    # ------------------------------------------------------------------
    # One-shot execution
    # ------------------------------------------------------------------

    def execute(self, session_id: str, prompt: str, project_path: str | None) -> Session:
        """Run one non-interactive turn, replacing any current process."""
        session = self.open_session(session_id, project_path)
        with session.lock:
            pending = self.auth.pending_url()
            if pending:
                self._publish(session, "auth_required", auth_url=pending,
                              content="Agent CLI requires authentication")
                self._publish(session, "exit", exit_code=None)
                return session

            session.detach_process()
            lines = LineBuffer()
            argv = (
                self.settings.agent_argv
                + ["-p", prompt, "--output-format", "stream-json", "--verbose", SKIP_PERMISSIONS_FLAG]
                + self._resume_args(session)
            )
            handle = ProcessHandle(
                argv,
                session.project_path,
                ONESHOT_ENV,
                use_pty=False,
                on_output=lambda h, data: self._on_stdout(session, h, lines.feed(data)),
                on_stderr=lambda h, data: self._on_stderr(session, h, data),
                on_exit=lambda h, code: self._on_exit(session, h, code, lines),
                registry=self.process_registry,
                description=f"agent run {session_id}",
                first_output_timeout=STARTUP_OUTPUT_TIMEOUT,
            )
            self._publish(session, "started")
            try:
                handle.start()
            except ProcessSpawnError as exc:
                logger.error("Could not execute in session %s: %s", session_id, exc)
                self._publish(session, "error", content=str(exc), code=EXECUTION_ERROR)
                self._publish(session, "exit", exit_code=None)
                return session
            session.attach(handle, "oneshot")
        return session

    def _on_stdout(self, session: Session, handle: ProcessHandle, lines: list[str]) -> None:
        with session.lock:
            if handle.detached:
                return
            session.touch()
            for line in lines:
                self._publish_line(session, line)

    def _publish_line(self, session: Session, line: str) -> None:
        classified = classify_line(line)
        if classified.conversation_id and not session.agent_conversation_id:
            session.agent_conversation_id = classified.conversation_id
            logger.info("Captured conversation %s for session %s",
                        classified.conversation_id, session.id)
            self._persist(session)

        for event in classified.events:
            if event.kind == "auth_required":
                self._handle_auth_failure(session, event.content)
                continue
            logger.debug("[%s] %s: %.200s", session.id, event.output_type, event.content)
            self._publish(
                session,
                "output",
                content=event.content,
                output_type=event.output_type,
                is_final=event.is_final,
            )

    def _on_stderr(self, session: Session, handle: ProcessHandle, data: bytes) -> None:
        if handle.detached:
            return
        content = data.decode("utf-8", errors="replace")
        logger.warning("Agent stderr (%d bytes): %.500s", len(content), content)
        url = extract_auth_url(content)
        if url:
            self.auth.require_login(url)
            self._publish(session, "auth_required", auth_url=url,
                          content="Agent CLI requires authentication")
            return
        self._publish(session, "error", content=content, code=EXECUTION_ERROR)

    def _handle_auth_failure(self, session: Session, message: str) -> None:
        """The agent reported missing credentials: surface a login URL."""
        pending = self.auth.pending_url()
        if pending:
            self._publish(session, "auth_required", auth_url=pending, content=message)
            return

        def run_login():
            try:
                result = self.login.trigger()
            except ProcessSpawnError as exc:
                self._publish(session, "error", content=str(exc), code=AUTH_FAILED)
                return
            if result.url:
                self._publish(session, "auth_required", auth_url=result.url, content=message)
            elif result.already_authenticated:
                self._publish(session, "auth_success", content="Already authenticated")
            else:
                self._publish(session, "error", code=AUTH_FAILED,
                              content="Authentication required but no login URL was found")

        threading.Thread(target=run_login, name=f"login-{session.id}", daemon=True).start()

    # ------------------------------------------------------------------
    # Exit, stop, destroy
    # ------------------------------------------------------------------

    def _on_exit(
        self,
        session: Session,
        handle: ProcessHandle,
        code: int,
        lines: LineBuffer | None = None,
    ) -> None:
        with session.lock:
            if handle.detached:
                return
            if lines is not None:
                rest = lines.flush()
                if rest.strip():
                    self._publish_line(session, rest)
            if session.process is handle:
                session.process = None
                session.mode = None
            session.last_exit_code = code
            session.touch()
            if handle.stop_requested:
                # stop() already told subscribers
                return

            if not handle.use_pty and code == 0:
                self.auth.mark_authenticated()
            if handle.use_pty:
                snapshot = self.buffers.get_snapshot(session.id)
                if snapshot is not None:
                    self._publish(session, "terminal_buffer", buffer=snapshot.to_dict())
            self._publish(session, "exit", exit_code=code, reason="normal")

    def stop(self, session_id: str) -> None:
        """Graceful stop: SIGTERM, then SIGKILL after the grace period.

        Subscribers always get exactly one ``exit`` (reason ``stopped``) per
        call, even if the process was already gone.

        Raises:
            SessionNotFoundError: no such session
        """
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        with session.lock:
            handle = session.process
            if handle is not None and handle.is_alive:
                logger.info("Stopping session %s", session_id)
                handle.stop_requested = True
                handle.terminate(self.settings.stop_grace_seconds)
            session.touch()
            self._publish(session, "exit", exit_code=None, reason="stopped")

    def destroy(self, session_id: str) -> bool:
        """Kill the session's process immediately and forget the session.

        Idempotent: unknown sessions return False.
        """
        session = self.registry.remove(session_id)
        if session is None:
            return False
        with session.lock:
            session.detach_process()
            self.buffers.destroy_buffer(session_id)
            self._publish(session, "destroyed")
            session.channel.close()
        if self.store is not None:
            self.store.remove(session_id)
        logger.info("Session %s destroyed", session_id)
        return True

    def sweep_idle(self) -> list[str]:
        """Destroy sessions idle longer than the configured timeout."""
        destroyed = []
        for session_id in self.registry.idle_sessions(self.settings.session_idle_timeout):
            session = self.registry.get(session_id)
            if session is None or self._process_active(session):
                continue
            if self.destroy(session_id):
                logger.info("Swept idle session %s", session_id)
                destroyed.append(session_id)
        return destroyed

    def shutdown(self) -> None:
        """Destroy every session and the login process."""
        for session_id in self.registry.ids():
            self.destroy(session_id)
        self.login.cancel()
        self.global_channel.close()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def trigger_login(self) -> LoginResult:
        """Start the login flow. See LoginFlow.trigger."""
        return self.login.trigger()

    def submit_auth_code(self, code: str) -> bool:
        return self.login.submit_code(code)

    def _on_login_event(self, kind: str, detail: str) -> None:
        message = "Authentication successful" if kind == "auth_success" else detail
        self.global_channel.publish(SessionEvent(type=kind, session_id="", content=message))

    def verify_cli_installed(self) -> bool:
        """Log the agent CLI version. Returns False if it cannot be run."""
        try:
            result = subprocess.run(
                self.settings.agent_argv + ["--version"],
                capture_output=True,
                text=True,
                timeout=15,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Agent CLI %s is not available: %s", self.settings.agent_command, exc)
            return False
        logger.info("Agent CLI version: %s", result.stdout.strip() or result.stderr.strip())
        return result.returncode == 0

    def check_auth_status(self, timeout: float = 120.0) -> bool | None:
        """Probe whether the agent CLI is logged in with a trivial one-shot run.

        Returns:
            True if authenticated, False if a login URL was reported, None if unknown
        """
        logger.info("Checking agent authentication status...")
        try:
            result = subprocess.run(
                self.settings.agent_argv
                + ["-p", "echo test", "--output-format", "json", SKIP_PERMISSIONS_FLAG],
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                cwd=str(self.settings.default_workdir),
                env=_merged_env(ONESHOT_ENV),
                timeout=timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Failed to check agent auth: %s", exc)
            return None

        url = extract_auth_url(result.stderr)
        if url:
            self.auth.require_login(url)
            return False
        if result.returncode == 0:
            self.auth.mark_authenticated()
            return True
        logger.warning("Agent auth check exited with code %s: %.500s",
                       result.returncode, result.stderr)
        return None


def _merged_env(extra: dict[str, str]) -> dict[str, str]:
    env = os.environ.copy()
    env.update(extra)
    return env
