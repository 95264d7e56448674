import asyncio
import json
from typing import Any, Dict, List, Tuple

from fastapi import WebSocket

from beliyo.schemas.chat import ConnectionState, PresenceOut
from beliyo.services.chat_session import SessionListener
from beliyo.services.message_thread import ThreadItem


class SocketListener(SessionListener):
    """Turns session callbacks into outbound frames without blocking the loop."""

    def __init__(self) -> None:
        self.outbox: asyncio.Queue = asyncio.Queue()

    def _put(self, frame: Dict[str, Any]) -> None:
        self.outbox.put_nowait(json.dumps(frame))

    def on_item(self, item: ThreadItem) -> None:
        self._put({"type": "message", "message": item.as_dict()})

    def on_presence(self, presence: List[PresenceOut]) -> None:
        self._put({"type": "presence", "presence": [p.model_dump(mode="json") for p in presence]})

    def on_connection(self, state: ConnectionState) -> None:
        self._put({"type": "connection", "state": state.model_dump(mode="json")})

    def on_error(self, error: Exception) -> None:
        self._put({"type": "error", "detail": str(error)})


class ConnectionManager:

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[Tuple[str, WebSocket]]] = {}

    async def connect(self, user_id: str, conversation_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append((conversation_id, websocket))

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        if user_id in self.active_connections:
            self.active_connections[user_id] = [c for c in self.active_connections[user_id] if c[1] is not websocket]
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    def connections_for(self, user_id: str) -> List[WebSocket]:
        return [ws for _, ws in self.active_connections.get(user_id, [])]

    async def close_user(self, user_id: str, code: int = 4001) -> None:
        for websocket in self.connections_for(user_id):
            await websocket.close(code=code)
        self.active_connections.pop(user_id, None)
