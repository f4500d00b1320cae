import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.config import settings
from app.core.security import decode_access_token
from app.services.connection_manager import manager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["push"])


def _resolve_user(message: dict) -> tuple[str | None, str | None]:
    """User id for a register message, or an error text.

    A ``token`` must decode to the same user as ``userId``; either may be sent
    alone. With ``ws_require_token`` set, the token is mandatory.
    """
    user_id = message.get("userId")
    user_id = str(user_id) if user_id not in (None, "") else None
    token = message.get("token")
    if not token:
        if settings.ws_require_token:
            return None, "token is required"
        if user_id is None:
            return None, "userId is required"
        return user_id, None
    subject = decode_access_token(str(token))
    if subject is None:
        return None, "Invalid or expired token"
    if user_id is not None and user_id != subject:
        return None, "Token does not match userId"
    return subject, None


@router.websocket("/ws")
async def push_channel(websocket: WebSocket) -> None:
    """Notification push channel.

    Clients send ``{"type": "register", "userId": <id>, "token": <jwt>}`` after
    connecting;
    notifications then arrive as ``{"type": "notification", "notification": {...}}``.
    """
    await websocket.accept()
    await websocket.send_json({"type": "welcome", "message": "Connected to notification server"})
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object"})
                continue

            kind = message.get("type")
            if kind == "register":
                user_id, problem = _resolve_user(message)
                if problem:
                    await websocket.send_json({"type": "error", "message": problem})
                    continue
                await manager.register(str(user_id), websocket)
                logger.info("User %s registered on push channel", user_id)
                await websocket.send_json({"type": "registration_success", "userId": str(user_id)})
            elif kind == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {kind}"})
    except WebSocketDisconnect:
        manager.unregister(websocket)
