"""WebSocket endpoint for the session protocol."""

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pushtocode.server.api.routes.auth import api_key_valid
from pushtocode.server.services import errors, get_init_guard, get_supervisor
from pushtocode.server.services.protocol import ConnectionHandler
from pushtocode.server.state import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()

UNAUTHORIZED_CLOSE_CODE = 4401
HEARTBEAT_CLOSE_CODE = 4408


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Bidirectional session protocol.

    Client -> Server message types:
    - start_interactive / resume_session / destroy_session
    - init_session / execute / stop
    - pty_input / resize / upload_file
    - login / submit_auth_code
    - ping / pong

    Server -> Client message types:
    - session_ready / session_resumed / session_not_found / session_destroyed
    - status / output / terminal_buffer / file_uploaded
    - auth_required / auth_success / auth_code_submitted
    - error / ping / pong
    """
    candidate = websocket.headers.get("x-api-key") or websocket.query_params.get("apiKey")
    await websocket.accept()
    if not api_key_valid(candidate):
        client = websocket.client.host if websocket.client else "unknown"
        logger.warning("Rejected WebSocket connection from %s: invalid API key", client)
        await websocket.send_json({
            "type": "error",
            "sessionId": "",
            "code": errors.UNAUTHORIZED,
            "message": "Invalid or missing API key",
        })
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return

    send_lock = asyncio.Lock()

    async def send(message: dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_text(json.dumps(message))

    async def close_connection() -> None:
        try:
            await websocket.close(code=HEARTBEAT_CLOSE_CODE)
        except RuntimeError:
            pass

    handler = ConnectionHandler(get_supervisor(), get_init_guard(), get_settings(), send)
    await handler.start()
    heartbeat = asyncio.create_task(handler.heartbeat(close_connection))

    try:
        while True:
            data = await websocket.receive_text()
            await handler.handle_text(data)
    except WebSocketDisconnect:
        pass
    except RuntimeError as exc:
        # receive after close
        logger.info("WebSocket for client %s ended: %s", handler.client_id, exc)
    finally:
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass
        await handler.close()
