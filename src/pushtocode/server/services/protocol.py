"""Per-connection handling of the client protocol.

A ConnectionHandler answers client intents (start, resume, destroy, execute,
stop, input, upload, login) for one WebSocket, forwards session events to it,
and tracks a small state machine per session:

    no_session -> resuming -> ready
    no_session -> starting -> ready
    ready -> no_session            (on a failure that requires re-initialization)

It is transport agnostic: outgoing messages go through the ``send`` coroutine.
No exception escapes ``handle_text``; failures become ``error`` messages.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Literal

from pydantic import ValidationError

from pushtocode.server.api.schemas.messages import CLIENT_MESSAGE_MODELS, ClientMessage
from pushtocode.server.services import errors
from pushtocode.server.services.broadcast import SessionEvent, Subscription
from pushtocode.server.services.errors import ProcessSpawnError, SessionNotFoundError, UploadError
from pushtocode.server.services.session_manager import InitGuard
from pushtocode.server.services.supervisor import SessionSupervisor
from pushtocode.server.services.uploads import save_upload
from pushtocode.util.config import Settings

logger = logging.getLogger(__name__)

ProtocolState = Literal["no_session", "resuming", "starting", "ready"]
SendFn = Callable[[dict[str, Any]], Awaitable[None]]


def event_to_message(event: SessionEvent) -> dict[str, Any] | None:
    """Frame a SessionEvent as a server -> client message."""
    sid = event.session_id
    if event.type == "started":
        return {"type": "status", "sessionId": sid, "status": "running"}
    if event.type == "exit":
        status = "stopped" if event.reason == "stopped" else "idle"
        return {"type": "status", "sessionId": sid, "status": status, "exitCode": event.exit_code}
    if event.type == "output":
        return {
            "type": "output",
            "sessionId": sid,
            "content": event.content,
            "outputType": event.output_type,
            "isFinal": event.is_final,
        }
    if event.type == "terminal_buffer":
        return {"type": "terminal_buffer", "sessionId": sid, "buffer": event.buffer}
    if event.type == "error":
        return {
            "type": "error",
            "sessionId": sid,
            "code": event.code or errors.EXECUTION_ERROR,
            "message": event.content,
        }
    if event.type == "auth_required":
        return {
            "type": "auth_required",
            "sessionId": sid,
            "authUrl": event.auth_url,
            "message": event.content or "Authentication required",
        }
    if event.type == "auth_success":
        return {"type": "auth_success", "sessionId": sid, "message": event.content}
    if event.type == "auth_failed":
        return {"type": "error", "sessionId": sid, "code": errors.AUTH_FAILED, "message": event.content}
    if event.type == "destroyed":
        return {"type": "session_destroyed", "sessionId": sid}
    return None


class ConnectionHandler:
    """Protocol state for one client connection."""

    def __init__(
        self,
        supervisor: SessionSupervisor,
        init_guard: InitGuard,
        settings: Settings,
        send: SendFn,
        client_id: str | None = None,
    ):
        self.supervisor = supervisor
        self.init_guard = init_guard
        self.settings = settings
        self._send = send
        self.client_id = client_id or uuid.uuid4().hex[:8]

        self.session_ids: set[str] = set()
        self.states: dict[str, ProtocolState] = {}
        self.is_alive = True
        self._subscriptions: dict[str, tuple[Subscription, asyncio.Task]] = {}
        self._global: tuple[Subscription, asyncio.Task] | None = None
        self._closed = False

        self._handlers: dict[str, Callable[[Any], Awaitable[None]]] = {
            "start_interactive": self._on_start_interactive,
            "resume_session": self._on_resume_session,
            "destroy_session": self._on_destroy_session,
            "init_session": self._on_init_session,
            "execute": self._on_execute,
            "stop": self._on_stop,
            "pty_input": self._on_pty_input,
            "resize": self._on_resize,
            "upload_file": self._on_upload_file,
            "login": self._on_login,
            "submit_auth_code": self._on_submit_auth_code,
            "ping": self._on_ping,
            "pong": self._on_pong,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Called once the connection is authenticated."""
        logger.info("Client %s connected", self.client_id)
        subscription = self.supervisor.global_channel.subscribe()
        self._global = (subscription, asyncio.create_task(self._forward(subscription)))

        pending = self.supervisor.auth.pending_url()
        if pending:
            await self.send({
                "type": "auth_required",
                "sessionId": "",
                "authUrl": pending,
                "message": "Agent CLI requires authentication",
            })

    async def close(self) -> None:
        """Revoke subscriptions and apply the disconnect policy."""
        if self._closed:
            return
        self._closed = True
        logger.info("Client %s disconnected", self.client_id)

        forwarders = list(self._subscriptions.values())
        if self._global is not None:
            forwarders.append(self._global)
        self._subscriptions.clear()
        self._global = None
        for subscription, task in forwarders:
            subscription.close()
            task.cancel()
        for _, task in forwarders:
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass

        if self.settings.destroy_sessions_on_disconnect:
            for session_id in list(self.session_ids):
                logger.info("Destroying session %s of disconnected client %s", session_id, self.client_id)
                await asyncio.to_thread(self.supervisor.destroy, session_id)
                self.init_guard.clear(session_id)
        self.session_ids.clear()

    async def heartbeat(self, close_connection: Callable[[], Awaitable[None]]) -> None:
        """Ping every heartbeat interval; close the connection after a missed pong."""
        while not self._closed:
            await asyncio.sleep(self.settings.heartbeat_interval)
            if self._closed:
                return
            if not self.is_alive:
                logger.warning("Client %s missed a heartbeat, closing", self.client_id)
                await close_connection()
                return
            self.is_alive = False
            await self.send({"type": "ping"})

    # ------------------------------------------------------------------
    # Messaging helpers
    # ------------------------------------------------------------------

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        await self._send(message)

    async def send_error(self, session_id: str, code: str, message: str) -> None:
        await self.send({"type": "error", "sessionId": session_id, "code": code, "message": message})

    def state_of(self, session_id: str) -> ProtocolState:
        return self.states.get(session_id, "no_session")

    def _subscribe(self, session_id: str) -> None:
        """Subscribe this connection to a session's events (once per live channel)."""
        if self._closed:
            return
        entry = self._subscriptions.get(session_id)
        if entry is not None and not entry[0].closed:
            return
        session = self.supervisor.get_session(session_id)
        if session is None:
            return
        # A closed entry belongs to a destroyed session; its forwarder drains on its own
        subscription = session.channel.subscribe()
        task = asyncio.create_task(self._forward(subscription))
        self._subscriptions[session_id] = (subscription, task)
        self.session_ids.add(session_id)

    def _owns(self, session_id: str, subscription: Subscription) -> bool:
        entry = self._subscriptions.get(session_id)
        return entry is not None and entry[0] is subscription

    async def _forward(self, subscription: Subscription) -> None:
        async for event in subscription:
            if event.type == "destroyed":
                if not self._owns(event.session_id, subscription):
                    # Already answered by destroy_session, or the session was restarted
                    return
                self._forget(event.session_id)
            message = event_to_message(event)
            if message is None:
                continue
            try:
                await self.send(message)
            except Exception as exc:
                logger.info("Client %s send failed: %s", self.client_id, exc)
                return

    def _forget(self, session_id: str) -> None:
        self._subscriptions.pop(session_id, None)
        self.session_ids.discard(session_id)
        self.states.pop(session_id, None)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_text(self, raw: str) -> None:
        self.is_alive = True
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            await self.send_error("", errors.INVALID_MESSAGE, "Invalid JSON")
            return
        if not isinstance(data, dict):
            await self.send_error("", errors.INVALID_MESSAGE, "Message must be a JSON object")
            return
        await self.handle_message(data)

    async def handle_message(self, data: dict[str, Any]) -> None:
        msg_type = data.get("type")
        session_id = data.get("sessionId") if isinstance(data.get("sessionId"), str) else ""

        model = CLIENT_MESSAGE_MODELS.get(msg_type) if isinstance(msg_type, str) else None
        if model is None:
            logger.warning("Client %s sent unknown message type %r", self.client_id, msg_type)
            await self.send_error(session_id, errors.UNKNOWN_TYPE, f"Unknown message type: {msg_type}")
            return

        try:
            message = model.model_validate(data)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            await self.send_error(session_id, errors.INVALID_MESSAGE, f"Invalid {msg_type}: {details}")
            return

        try:
            await self._handlers[msg_type](message)
        except Exception as exc:
            logger.exception("Error handling %s for session %s", msg_type, session_id)
            await self.send_error(session_id, _failure_code(msg_type), str(exc))

    # ------------------------------------------------------------------
    # Session lifecycle messages
    # ------------------------------------------------------------------

    async def _open_and_subscribe(self, session_id: str, project_path: str | None) -> None:
        await asyncio.to_thread(self.supervisor.open_session, session_id, project_path)
        self._subscribe(session_id)

    async def _on_start_interactive(self, message) -> None:
        sid = message.session_id
        logger.info("Client %s: start_interactive %s (%s)", self.client_id, sid, message.project_path)
        if not self.init_guard.begin(sid):
            logger.info("Initialization of %s already in flight, attaching", sid)
            await self._open_and_subscribe(sid, message.project_path)
            self.states[sid] = "ready"
            await self.send({"type": "status", "sessionId": sid, "status": "running"})
            return

        self.states[sid] = "starting"
        try:
            await self._open_and_subscribe(sid, message.project_path)
            spawned = await asyncio.to_thread(self.supervisor.start_interactive, sid, message.project_path)
        except Exception as exc:
            self.states[sid] = "no_session"
            logger.exception("start_interactive failed for %s", sid)
            await self.send_error(sid, errors.START_INTERACTIVE_FAILED, str(exc))
            return
        finally:
            self.init_guard.end(sid)

        if not spawned:
            # auth_required or the spawn error reached the client through the channel
            self.init_guard.clear(sid)
            self.states[sid] = "no_session"
            return
        self.states[sid] = "ready"
        await self.send({"type": "session_ready", "sessionId": sid})

    async def _on_resume_session(self, message) -> None:
        sid = message.session_id
        self.states[sid] = "resuming"
        result = await asyncio.to_thread(self.supervisor.resume_snapshot, sid)
        if result is None:
            self.states[sid] = "no_session"
            logger.info("Client %s: resume of unknown session %s", self.client_id, sid)
            await self.send({"type": "session_not_found", "sessionId": sid})
            return

        buffer, is_running = result
        self._subscribe(sid)
        self.states[sid] = "ready"
        logger.info("Client %s resumed session %s (running=%s)", self.client_id, sid, is_running)
        await self.send({
            "type": "session_resumed",
            "sessionId": sid,
            "buffer": buffer,
            "isRunning": is_running or self.init_guard.in_flight(sid),
        })

    async def _on_destroy_session(self, message) -> None:
        sid = message.session_id
        # Drop the subscription first so a start right after gets a fresh one
        self._forget(sid)
        self.init_guard.clear(sid)
        await asyncio.to_thread(self.supervisor.destroy, sid)
        await self.send({"type": "session_destroyed", "sessionId": sid})

    async def _on_init_session(self, message) -> None:
        sid = message.session_id
        project_path = message.project_path or message.project_id
        try:
            await self._open_and_subscribe(sid, project_path)
        except Exception as exc:
            await self.send_error(sid, errors.INIT_FAILED, str(exc))
            return
        self.states[sid] = "ready"
        running = self.supervisor.is_running(sid)
        await self.send({"type": "session_ready", "sessionId": sid})
        await self.send({"type": "status", "sessionId": sid, "status": "running" if running else "idle"})

    async def _on_execute(self, message) -> None:
        sid = message.session_id
        logger.info("Client %s: execute in %s: %.200s", self.client_id, sid, message.prompt)
        await self._open_and_subscribe(sid, message.project_path)
        self.states[sid] = "ready"
        await asyncio.to_thread(self.supervisor.execute, sid, message.prompt, message.project_path)

    async def _on_stop(self, message) -> None:
        sid = message.session_id
        self._subscribe(sid)
        try:
            await asyncio.to_thread(self.supervisor.stop, sid)
        except SessionNotFoundError:
            self.states[sid] = "no_session"
            await self.send_error(sid, errors.SESSION_NOT_FOUND, errors.SESSION_NOT_FOUND_MESSAGE)

    # ------------------------------------------------------------------
    # Terminal I/O
    # ------------------------------------------------------------------

    async def _no_target(self, sid: str) -> None:
        self.states[sid] = "no_session"
        if self.supervisor.get_session(sid) is None:
            await self.send_error(sid, errors.SESSION_NOT_FOUND, errors.SESSION_NOT_FOUND_MESSAGE)
        else:
            await self.send_error(sid, errors.NO_ACTIVE_PTY, errors.NO_ACTIVE_PTY_MESSAGE)

    async def _on_pty_input(self, message) -> None:
        sid = message.session_id
        if not message.data:
            return
        ok = await asyncio.to_thread(self.supervisor.send_input, sid, message.data.encode("utf-8"))
        if not ok:
            await self._no_target(sid)

    async def _on_resize(self, message) -> None:
        sid = message.session_id
        ok = await asyncio.to_thread(self.supervisor.resize, sid, message.cols, message.rows)
        if not ok:
            await self._no_target(sid)

    async def _on_upload_file(self, message) -> None:
        sid = message.session_id
        try:
            uploaded = await asyncio.to_thread(
                save_upload,
                self.settings.upload_dir,
                sid,
                message.filename,
                message.data,
                message.mime_type,
                self.settings.max_upload_bytes,
            )
        except (UploadError, OSError) as exc:
            logger.warning("Upload for %s rejected: %s", sid, exc)
            await self.send_error(sid, errors.UPLOAD_FAILED, str(exc))
            return
        self.supervisor.registry.touch(sid)
        await self.send({
            "type": "file_uploaded",
            "sessionId": sid,
            "filename": uploaded.filename,
            "path": str(uploaded.path),
            "mimeType": uploaded.mime_type,
            "size": uploaded.size,
        })

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _on_login(self, message: ClientMessage) -> None:
        try:
            result = await asyncio.to_thread(self.supervisor.trigger_login)
        except ProcessSpawnError as exc:
            await self.send_error("", errors.LOGIN_FAILED, str(exc))
            return
        if result.url:
            await self.send({
                "type": "auth_required",
                "sessionId": "",
                "authUrl": result.url,
                "message": "Open the URL to log in, then paste the code",
            })
        elif result.already_authenticated:
            await self.send({"type": "auth_success", "sessionId": "", "message": "Already authenticated"})
        else:
            await self.send_error("", errors.LOGIN_FAILED, "Could not obtain a login URL")

    async def _on_submit_auth_code(self, message) -> None:
        code = message.code.strip()
        if not code:
            await self.send_error("", errors.INVALID_CODE, "Authorization code is empty")
            return
        ok = await asyncio.to_thread(self.supervisor.submit_auth_code, code)
        if not ok:
            await self.send_error(
                "", errors.CODE_SUBMIT_FAILED, "Failed to submit auth code. No active login process."
            )
            return
        await self.send({
            "type": "auth_code_submitted",
            "sessionId": "",
            "message": "Authorization code submitted",
        })

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def _on_ping(self, message: ClientMessage) -> None:
        self.is_alive = True
        await self.send({"type": "pong", "timestamp": int(time.time() * 1000)})

    async def _on_pong(self, message: ClientMessage) -> None:
        self.is_alive = True


_FAILURE_CODES = {
    "start_interactive": errors.START_INTERACTIVE_FAILED,
    "init_session": errors.INIT_FAILED,
    "execute": errors.EXECUTE_FAILED,
    "stop": errors.STOP_FAILED,
    "upload_file": errors.UPLOAD_FAILED,
    "login": errors.LOGIN_FAILED,
    "submit_auth_code": errors.CODE_SUBMIT_FAILED,
}


def _failure_code(msg_type: str) -> str:
    return _FAILURE_CODES.get(msg_type, errors.EXECUTION_ERROR)
