import json
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Dict, List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from constants import FALLBACK_OUTBOX_LIMIT
from logging_config import get_logger

logger = get_logger(__name__)


class Connection(ABC):
    """A live transport session the relay can write events to."""

    transport = "unknown"

    def __init__(self, session_id: str):
        self.session_id = session_id
        # (room_id, peer_id) this session joined as, for idempotent joins
        self.joined: Optional[Tuple[str, str]] = None
        self.closed = False

    @abstractmethod
    async def send(self, message: dict) -> bool:
        """Write one event. Returns False if the session can no longer be reached."""

    async def close(self):
        self.closed = True


class WebSocketConnection(Connection):
    transport = "websocket"

    def __init__(self, session_id: str, websocket: WebSocket):
        super().__init__(session_id)
        self.websocket = websocket

    async def send(self, message: dict) -> bool:
        if self.closed or self.websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await self.websocket.send_text(json.dumps(message))
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Failed to send {message.get('event')} to session {self.session_id}: {e}")
            return False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close()
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Error closing WebSocket for session {self.session_id}: {e}")


class QueuedConnection(Connection):
    """Fallback session: outbound events wait in an outbox until polled.

    Every message gets an id. Messages stay in the outbox until a poll
    acknowledges them, so a lost poll response is redelivered on the next poll.
    """

    transport = "fallback"

    def __init__(self, session_id: str, limit: int = FALLBACK_OUTBOX_LIMIT):
        super().__init__(session_id)
        self.outbox = deque(maxlen=limit)

    async def send(self, message: dict) -> bool:
        if self.closed:
            return False
        if len(self.outbox) == self.outbox.maxlen:
            logger.warning(f"Fallback outbox full for session {self.session_id}, dropping oldest message")
        self.outbox.append({"id": uuid.uuid4().hex, **message})
        return True

    def acknowledge(self, message_id: str) -> int:
        """Drop messages up to and including message_id. Unknown ids drop nothing."""
        ids = [m["id"] for m in self.outbox]
        if message_id not in ids:
            return 0
        count = ids.index(message_id) + 1
        for _ in range(count):
            self.outbox.popleft()
        return count

    def pending_messages(self) -> List[dict]:
        return list(self.outbox)


class ConnectionRegistry:
    """In-process map of transport session id -> connection. Never persisted."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def register(self, connection: Connection):
        self._connections[connection.session_id] = connection
        logger.debug(f"Registered {connection.transport} session {connection.session_id} (total: {len(self._connections)})")

    def unregister(self, session_id: str) -> Optional[Connection]:
        connection = self._connections.pop(session_id, None)
        if connection:
            logger.debug(f"Unregistered session {session_id} (total: {len(self._connections)})")
        return connection

    def get(self, session_id: Optional[str]) -> Optional[Connection]:
        if not session_id:
            return None
        return self._connections.get(session_id)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def count_by_transport(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for connection in self._connections.values():
            counts[connection.transport] = counts.get(connection.transport, 0) + 1
        return counts


def new_session_id() -> str:
    return uuid.uuid4().hex
