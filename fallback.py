from typing import List, Optional

from connections import ConnectionRegistry, QueuedConnection
from constants import FALLBACK_OUTBOX_LIMIT
from errors import MalformedInputError
from logging_config import get_logger
from relay import SignalingRelay

logger = get_logger(__name__)


class FallbackChannel:
    """HTTP request/response stand-in for the WebSocket transport.

    A fallback session is a QueuedConnection in the same registry the
    WebSocket sessions use, so the relay treats both alike. Polls and submits
    count as heartbeats; a session that stops polling expires through the
    relay's liveness timer.
    """

    def __init__(self, relay: SignalingRelay, outbox_limit: int = FALLBACK_OUTBOX_LIMIT):
        self.relay = relay
        self.outbox_limit = outbox_limit

    @property
    def registry(self) -> ConnectionRegistry:
        return self.relay.registry

    def probe(self, session_id: str, client_timestamp: float) -> dict:
        """Echo the client's timestamp so it can estimate round-trip time."""
        return {
            "session_id": session_id,
            "client_timestamp": client_timestamp,
            "server_timestamp": self.relay.clock(),
        }

    async def poll(self, session_id: str, ack: Optional[str] = None) -> List[dict]:
        connection = await self._ensure_session(session_id)
        if ack:
            dropped = connection.acknowledge(ack)
            logger.debug(f"Fallback session {session_id} acknowledged {dropped} messages")
        return connection.pending_messages()

    async def submit(self, session_id: str, messages: List[dict]) -> int:
        """Dispatch a batch of inbound events; malformed ones are skipped."""
        await self._ensure_session(session_id)
        accepted = 0
        for message in messages:
            try:
                await self.relay.handle(session_id, message)
            except MalformedInputError as e:
                logger.warning(f"Skipping malformed fallback message from session {session_id}: {e.message}")
                continue
            accepted += 1
        logger.debug(f"Fallback session {session_id} submitted {len(messages)} messages, accepted {accepted}")
        return accepted

    async def _ensure_session(self, session_id: str) -> QueuedConnection:
        connection = self.registry.get(session_id)
        if connection is None:
            connection = QueuedConnection(session_id, limit=self.outbox_limit)
            await self.relay.connect(connection)
            logger.info(f"Opened fallback session {session_id}")
            return connection
        if not isinstance(connection, QueuedConnection):
            raise MalformedInputError(f"Session {session_id} is bound to a {connection.transport} transport")
        self.relay.touch_session(session_id)
        return connection
