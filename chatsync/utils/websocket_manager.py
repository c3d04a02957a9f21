import json
import logging
from typing import Any, Dict, List

from fastapi import WebSocket


logger = logging.getLogger(__name__)


class ConnectionManager:

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}

    def is_connected(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.active_connections.get(user_id)
        if sockets is None:
            return
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            del self.active_connections[user_id]

    async def send_event(self, user_id: str, event: Dict[str, Any]) -> None:
        message = json.dumps(event, default=str)
        for conn in list(self.active_connections.get(user_id, ())):
            try:
                await conn.send_text(message)
            except Exception:
                logger.debug("Dropping dead socket for %s", user_id)
                self.disconnect(user_id, conn)
