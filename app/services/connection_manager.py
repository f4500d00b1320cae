import logging
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Registry of live push sockets, one per user id.

    Delivery is best effort: a failed send drops the socket and reports False,
    the persisted notification stays available for polling.
    """

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}

    async def register(self, user_id: str, websocket: WebSocket) -> None:
        previous = self._connections.get(user_id)
        self._connections[user_id] = websocket
        if previous is not None and previous is not websocket:
            logger.info("Replacing push connection for user %s", user_id)
            if previous.client_state == WebSocketState.CONNECTED:
                try:
                    await previous.close(code=1000)
                except RuntimeError as e:
                    logger.debug("Closing stale socket for user %s failed: %s", user_id, e)

    def unregister(self, websocket: WebSocket) -> str | None:
        for user_id, ws in list(self._connections.items()):
            if ws is websocket:
                del self._connections[user_id]
                logger.info("User %s disconnected from push channel", user_id)
                return user_id
        return None

    def is_connected(self, user_id: str | int) -> bool:
        return str(user_id) in self._connections

    @property
    def connected_users(self) -> list[str]:
        return list(self._connections)

    async def send_to_user(self, user_id: str | int, payload: dict[str, Any]) -> bool:
        ws = self._connections.get(str(user_id))
        if ws is None:
            return False
        try:
            await ws.send_json(payload)
            return True
        except Exception as e:
            logger.warning("Push to user %s failed, dropping connection: %s", user_id, e)
            self._connections.pop(str(user_id), None)
            return False


manager = ConnectionManager()
