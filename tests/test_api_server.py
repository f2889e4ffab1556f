"""Tests for the pushtocode HTTP and WebSocket endpoints."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from pushtocode.server.main import create_app
from pushtocode.server.services import reset_services
from pushtocode.server.state import reset_state, set_settings
from pushtocode.util.config import Settings

API_KEY = "secret-key"
AUTH = {"x-api-key": API_KEY}


@pytest.fixture
def client(tmp_path, fake_agent):
    """Create a test client with isolated settings and a fake agent CLI."""
    reset_services()
    reset_state()
    set_settings(Settings(
        api_key=API_KEY,
        agent_command=fake_agent,
        default_workdir=tmp_path,
        session_store_path=tmp_path / "sessions.json",
        upload_dir=tmp_path / "uploads",
        pidfile=tmp_path / "agents.pid",
        check_auth_on_startup=False,
        stop_grace_seconds=1.0,
        snapshot_throttle_ms=10,
    ))

    app = create_app()
    with TestClient(app) as client:
        yield client

    reset_services()
    reset_state()


def receive_until(ws, predicate, limit: int = 200):
    """Read messages until one matches; returns it."""
    for _ in range(limit):
        message = ws.receive_json()
        if predicate(message):
            return message
    raise AssertionError("Expected message never arrived")


class TestHealthEndpoints:
    """Tests for /health and /status."""

    def test_health(self, client):
        """Health endpoint returns status, version, and uptime."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert data["uptime_seconds"] >= 0

    def test_status(self, client):
        """Status reports session counts and login state."""
        response = client.get("/status")
        assert response.status_code == 200
        data = response.json()
        assert data["sessions"] == 0
        assert data["running_sessions"] == 0
        assert data["pending_login_url"] is None


class TestSessionEndpoints:
    """Tests for the session listing API."""

    def test_requires_api_key(self, client):
        """Session endpoints reject missing or wrong keys."""
        assert client.get("/api/v1/sessions").status_code == 401
        assert client.get("/api/v1/sessions", headers={"x-api-key": "nope"}).status_code == 401

    def test_query_parameter_key(self, client):
        """The key may be passed as a query parameter."""
        response = client.get(f"/api/v1/sessions?apiKey={API_KEY}")
        assert response.status_code == 200
        assert response.json() == {"sessions": [], "total": 0}

    def test_get_unknown_session(self, client):
        """Unknown session returns 404."""
        assert client.get("/api/v1/sessions/missing", headers=AUTH).status_code == 404

    def test_lists_sessions_created_over_websocket(self, client, tmp_path):
        """Sessions opened by a client appear in the listing."""
        with client.websocket_connect("/ws", headers=AUTH) as ws:
            ws.send_json({"type": "init_session", "sessionId": "s1", "projectPath": str(tmp_path)})
            receive_until(ws, lambda m: m["type"] == "session_ready")

        data = client.get("/api/v1/sessions", headers=AUTH).json()
        assert data["total"] == 1
        session = data["sessions"][0]
        assert session["id"] == "s1"
        assert session["project_path"] == str(tmp_path.resolve())
        assert session["running"] is False

        detail = client.get("/api/v1/sessions/s1", headers=AUTH).json()
        assert detail["active"] is True


class TestWebSocketAuth:
    """API key checks on the WebSocket endpoint."""

    def test_rejects_missing_key(self, client):
        """Unauthenticated sockets get an UNAUTHORIZED error and close code 4401."""
        with client.websocket_connect("/ws") as ws:
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "UNAUTHORIZED"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4401

    def test_rejects_wrong_key(self, client):
        """A wrong key is rejected the same way."""
        with client.websocket_connect("/ws", headers={"x-api-key": "wrong"}) as ws:
            assert ws.receive_json()["code"] == "UNAUTHORIZED"

    def test_accepts_query_key(self, client):
        """apiKey in the query string authenticates."""
        with client.websocket_connect(f"/ws?apiKey={API_KEY}") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"


class TestWebSocketProtocol:
    """Session protocol over a real socket."""

    def test_resume_unknown(self, client):
        """Resuming an unknown session answers session_not_found."""
        with client.websocket_connect("/ws", headers=AUTH) as ws:
            ws.send_json({"type": "resume_session", "sessionId": "nope"})
            assert ws.receive_json() == {"type": "session_not_found", "sessionId": "nope"}

    def test_invalid_json_keeps_connection(self, client):
        """A malformed frame produces an error and the socket stays usable."""
        with client.websocket_connect("/ws", headers=AUTH) as ws:
            ws.send_text("not json")
            assert ws.receive_json()["code"] == "INVALID_MESSAGE"
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_interactive_session_survives_reconnect(self, client):
        """A session started on one socket is resumed with its screen on another."""
        with client.websocket_connect("/ws", headers=AUTH) as ws:
            ws.send_json({"type": "start_interactive", "sessionId": "s1"})
            receive_until(ws, lambda m: m["type"] == "session_ready")
            receive_until(
                ws,
                lambda m: m["type"] == "terminal_buffer" and "ready>" in "".join(m["buffer"]["lines"]),
            )

        with client.websocket_connect("/ws", headers=AUTH) as ws:
            ws.send_json({"type": "resume_session", "sessionId": "s1"})
            resumed = receive_until(ws, lambda m: m["type"] == "session_resumed")
            assert resumed["isRunning"] is True
            assert "ready>" in resumed["buffer"]["lines"][0]
            assert "\x1b[32m" in resumed["buffer"]["ansiContent"]

            ws.send_json({"type": "pty_input", "sessionId": "s1", "data": "hello\r"})
            receive_until(
                ws,
                lambda m: m["type"] == "terminal_buffer"
                and "you said hello" in "\n".join(m["buffer"]["lines"]),
            )

            ws.send_json({"type": "destroy_session", "sessionId": "s1"})
            receive_until(ws, lambda m: m["type"] == "session_destroyed")

        assert client.get("/status").json()["sessions"] == 0

    def test_execute(self, client):
        """A one-shot run streams classified output and returns to idle."""
        with client.websocket_connect("/ws", headers=AUTH) as ws:
            ws.send_json({"type": "execute", "sessionId": "s2", "prompt": "hi there"})
            output = receive_until(ws, lambda m: m["type"] == "output")
            assert output["content"] == "echo: hi there"
            receive_until(ws, lambda m: m["type"] == "status" and m["status"] == "idle")
