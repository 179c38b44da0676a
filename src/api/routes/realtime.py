"""Realtime chat WebSocket endpoint."""

import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from src.api.deps import authenticate_token
from src.api.middleware.auth import AuthError
from src.core.config import get_settings
from src.realtime.gateway import get_chat_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    token: str | None = Query(default=None, description="Optional bearer token binding the connection identity"),
) -> None:
    """Bidirectional chat channel carrying ``{"event", "data"}`` JSON frames.

    With a valid token the connection is bound to the token subject. Without
    one, payload identities are trusted unless authentication is required
    by configuration.
    """
    user = None
    if token:
        try:
            user = authenticate_token(token)
        except AuthError as e:
            logger.info("Rejected realtime connection: %s", e.message)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
            return
    elif get_settings().realtime_require_auth:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication required")
        return

    gateway = get_chat_gateway()
    connection = await gateway.connect(websocket, user)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            gateway.dispatch(connection, _frame_text(message))
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.disconnect(connection)


def _frame_text(message: dict) -> str:
    """Text of an inbound frame; undecodable binary frames become an empty (malformed) frame."""
    if message.get("text") is not None:
        return message["text"]
    try:
        return (message.get("bytes") or b"").decode("utf-8")
    except UnicodeDecodeError:
        return ""
