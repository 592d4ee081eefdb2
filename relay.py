"""Signaling relay: presence, room membership and envelope forwarding.

Inbound events are handled without locks. Every mutation is idempotent and
last write wins, and disconnects are bound to the session id captured at
connect time, so a late disconnect from an old session never clobbers a
peer that has already rejoined on a newer one.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional

from backend import PresenceStore
from connections import Connection, ConnectionRegistry
from constants import GRACE_PERIOD_SECONDS, LIVENESS_TIMEOUT_SECONDS, PENDING_REQUEST_TTL_SECONDS
from errors import StoreUnavailableError
from logging_config import get_logger
from pending import PendingRequestQueue
from schemas import events
from schemas.events import (
    JoinEvent,
    PingEvent,
    PullPendingEvent,
    SignalEvent,
    TransferRequestEvent,
    UpdateProfileEvent,
    parse_inbound,
)
from schemas.peers import PendingKind, PendingRequest, Peer

logger = get_logger(__name__)


class SignalingRelay:
    def __init__(
        self,
        store: PresenceStore,
        queue: PendingRequestQueue,
        registry: ConnectionRegistry,
        grace_period: float = GRACE_PERIOD_SECONDS,
        pending_ttl: float = PENDING_REQUEST_TTL_SECONDS,
        liveness_timeout: float = LIVENESS_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.queue = queue
        self.registry = registry
        self.grace_period = grace_period
        self.pending_ttl = pending_ttl
        self.liveness_timeout = liveness_timeout
        self.clock = clock

        # peer_id -> deferred deletion, cancelled when the peer rejoins
        self._grace_tasks: Dict[str, asyncio.Task] = {}
        # session_id -> liveness timer, re-armed on every heartbeat
        self._liveness_timers: Dict[str, asyncio.TimerHandle] = {}
        self._background: set = set()

        self.store_failures = 0
        self.last_store_failure: Optional[float] = None

    # Session lifecycle

    async def connect(self, connection: Connection):
        self.registry.register(connection)
        self._arm_liveness_timer(connection.session_id)
        logger.info(f"Session {connection.session_id} connected via {connection.transport}")

    async def handle(self, session_id: str, raw) -> None:
        """Validate one raw inbound event and dispatch it.

        Raises MalformedInputError before any state is touched, and
        StoreUnavailableError when Redis fails mid-operation.
        """
        event = parse_inbound(raw)
        # Any well-formed event proves the session is alive
        self.touch_session(session_id)
        try:
            if isinstance(event, JoinEvent):
                await self.join(session_id, event)
            elif isinstance(event, UpdateProfileEvent):
                await self.update_profile(session_id, event)
            elif isinstance(event, SignalEvent):
                await self.relay_signal(event)
            elif isinstance(event, TransferRequestEvent):
                await self.relay_transfer_request(event)
            elif isinstance(event, PullPendingEvent):
                await self.pull_pending(session_id)
            elif isinstance(event, PingEvent):
                await self.heartbeat(session_id)
        except StoreUnavailableError:
            self.record_store_failure()
            raise

    async def join(self, session_id: str, event: JoinEvent) -> Optional[List[Peer]]:
        """Bring a peer online in a room and return the room snapshot sent to it.

        Returns None when the call was a no-op: a repeat join on the same
        session, or a session that is no longer registered.
        """
        connection = self.registry.get(session_id)
        if connection is None:
            logger.debug(f"Ignoring join from unregistered session {session_id}")
            return None
        if connection.joined == (event.room, event.peer_id):
            logger.debug(f"Duplicate join for {event.peer_id} in {event.room} on session {session_id}")
            return None

        logger.info(f"Peer {event.name} ({event.peer_id}) joining room {event.room}")
        self._cancel_grace_deletion(event.peer_id)

        existing = self.store.get_peer(event.peer_id)
        if existing and existing.room_id and existing.room_id != event.room:
            # A peer belongs to at most one room
            self.store.remove_from_room(existing.room_id, event.peer_id)
            await self.broadcast(existing.room_id, events.peer_left(event.peer_id), exclude_session=session_id)
            logger.info(f"Peer {event.peer_id} moved from room {existing.room_id} to {event.room}")
        if existing and not existing.online:
            logger.info(f"Peer {event.peer_id} reconnected")

        peer = Peer(
            id=event.peer_id,
            name=event.name,
            glyph=event.glyph,
            color=event.color,
            online=True,
            session_id=session_id,
            room_id=event.room,
            last_seen=self.clock(),
        )
        self.store.upsert_peer(peer)
        self.store.add_to_room(event.room, peer.id)
        connection.joined = (event.room, peer.id)

        await self._deliver_pending(connection, peer.id)

        snapshot = self.store.list_peers_in_room(event.room)
        await connection.send(events.room_snapshot(snapshot))
        await self.broadcast(event.room, events.peer_joined(peer), exclude_session=session_id)

        logger.info(f"Peer {event.name} joined room {event.room}. Total peers: {len(snapshot)}")
        return snapshot

    async def update_profile(self, session_id: str, event: UpdateProfileEvent) -> Optional[Peer]:
        peer = self.store.get_peer_by_session(session_id)
        if peer is None:
            logger.debug(f"Profile update from session {session_id} with no peer, ignoring")
            return None

        updated = self.store.update_peer(
            peer.id,
            name=event.name,
            color=event.color,
            glyph=event.glyph,
            last_seen=self.clock(),
        )
        if updated is None:
            return None
        if updated.room_id:
            await self.broadcast(updated.room_id, events.peer_joined(updated), exclude_session=session_id)
        logger.info(f"Profile updated for {updated.name} ({updated.id})")
        return updated

    async def relay_signal(self, event: SignalEvent) -> bool:
        """Forward a negotiation envelope, queueing it if the target is unreachable.

        Returns True when delivered live. The sender is never told either way.
        """
        return await self._route(
            event.to_peer_id,
            event.from_peer_id,
            events.signal(event.from_peer_id, event.envelope),
            PendingKind.SIGNAL,
            event.envelope,
        )

    async def relay_transfer_request(self, event: TransferRequestEvent) -> bool:
        return await self._route(
            event.to_peer_id,
            event.from_peer_id,
            events.incoming_transfer_request(event.from_peer_id, event.metadata),
            PendingKind.TRANSFER_REQUEST,
            event.metadata,
        )

    async def pull_pending(self, session_id: str) -> int:
        """Replay queued requests for the session's peer without a rejoin."""
        connection = self.registry.get(session_id)
        peer = self.store.get_peer_by_session(session_id)
        if connection is None or peer is None:
            return 0
        return await self._deliver_pending(connection, peer.id)

    async def heartbeat(self, session_id: str):
        connection = self.registry.get(session_id)
        if connection is None:
            return
        self._arm_liveness_timer(session_id)
        peer = self.store.get_peer_by_session(session_id)
        if peer is not None:
            self.store.touch_peer(peer.id)
        await connection.send(events.pong(self.clock()))

    def touch_session(self, session_id: str):
        """Re-arm the liveness timer without writing to the session."""
        if session_id in self.registry:
            self._arm_liveness_timer(session_id)

    async def disconnect(self, session_id: str):
        """Tear down a session. Safe to call more than once for the same id."""
        self.registry.unregister(session_id)
        self._cancel_liveness_timer(session_id)

        try:
            peer = self.store.get_peer_by_session(session_id)
            if peer is None or not peer.online:
                logger.debug(f"Disconnect of session {session_id} with no online peer bound")
                return

            self.store.set_offline(peer.id)
            if peer.room_id:
                self.store.remove_from_room(peer.room_id, peer.id)
                await self.broadcast(peer.room_id, events.peer_left(peer.id))
        except StoreUnavailableError:
            self.record_store_failure()
            raise

        self._schedule_grace_deletion(peer.id, session_id)
        logger.info(f"Peer {peer.name} ({peer.id}) disconnected from room {peer.room_id}")

    async def evict(self, peer: Peer) -> bool:
        """Remove a peer outright. Used for records nobody is connected to anymore.

        `peer` is the record as last seen by the caller. Nothing happens unless
        the stored record is still that one, so a peer that rejoined or showed
        activity since is left alone. Returns True if the peer was removed.
        """
        current = self.store.get_peer(peer.id)
        if (
            current is None
            or current.session_id != peer.session_id
            or current.online != peer.online
            or current.last_seen > peer.last_seen
        ):
            logger.debug(f"Not evicting peer {peer.id}: record changed since it was read")
            return False
        self._cancel_grace_deletion(peer.id)
        if current.room_id:
            self.store.remove_from_room(current.room_id, peer.id)
            await self.broadcast(current.room_id, events.peer_left(peer.id))
        self.store.delete_peer(peer.id)
        logger.info(f"Evicted peer {peer.name} ({peer.id})")
        return True

    async def broadcast(self, room_id: str, message: dict, exclude_session: Optional[str] = None) -> int:
        """Send to every registered online member of the room except one session."""
        targets = []
        for peer in self.store.list_peers_in_room(room_id):
            if not peer.online or peer.session_id == exclude_session:
                continue
            connection = self.registry.get(peer.session_id)
            if connection is not None:
                targets.append(connection)
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(message) for c in targets), return_exceptions=True)
        delivered = sum(1 for r in results if r is True)
        logger.debug(f"Broadcast {message.get('event')} to {delivered}/{len(targets)} connections in room {room_id}")
        return delivered

    def record_store_failure(self):
        self.store_failures += 1
        self.last_store_failure = self.clock()

    def has_grace_task(self, peer_id: str) -> bool:
        return peer_id in self._grace_tasks

    def stats(self) -> dict:
        return {
            "total_connections": len(self.registry),
            "connections_by_transport": self.registry.count_by_transport(),
            "liveness_timers": len(self._liveness_timers),
            "grace_deletions_scheduled": len(self._grace_tasks),
            "store_failures": self.store_failures,
            "last_store_failure": self.last_store_failure,
        }

    async def close(self):
        """Cancel every scheduled deletion and liveness timer."""
        for handle in self._liveness_timers.values():
            handle.cancel()
        self._liveness_timers.clear()
        tasks = list(self._grace_tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._grace_tasks.clear()
        self._background.clear()

    # Internals

    async def _route(self, to_peer_id: str, from_peer_id: str, message: dict, kind: PendingKind, payload: dict) -> bool:
        target = self.store.get_peer(to_peer_id)
        if target is not None and target.online:
            connection = self.registry.get(target.session_id)
            if connection is not None and await connection.send(message):
                logger.debug(f"{kind.value} forwarded from {from_peer_id} to {to_peer_id} (session {target.session_id})")
                return True
            logger.debug(f"Target {to_peer_id} marked online but session {target.session_id} unreachable")

        request = PendingRequest.create(from_peer_id, to_peer_id, kind, payload, self.pending_ttl, self.clock())
        self.queue.enqueue(request)
        logger.info(f"Target {to_peer_id} unreachable, queued {kind.value} from {from_peer_id}")
        return False

    async def _deliver_pending(self, connection: Connection, peer_id: str) -> int:
        requests = self.queue.drain(peer_id)
        if not requests:
            return 0

        logger.info(f"Delivering {len(requests)} pending requests to {peer_id}")
        delivered = 0
        for index, request in enumerate(requests):
            if request.kind == PendingKind.TRANSFER_REQUEST:
                message = events.incoming_transfer_request(request.sender_id, request.payload)
            else:
                message = events.signal(request.sender_id, request.payload)
            if not await connection.send(message):
                # Connection dropped mid-replay; keep the rest for the next join
                for remaining in requests[index:]:
                    self.queue.enqueue(remaining)
                logger.warning(f"Replay to {peer_id} interrupted, re-queued {len(requests) - index} requests")
                break
            delivered += 1
        return delivered

    def _schedule_grace_deletion(self, peer_id: str, session_id: str):
        self._cancel_grace_deletion(peer_id)
        task = asyncio.create_task(self._delete_after_grace(peer_id, session_id))
        self._grace_tasks[peer_id] = task

        def _forget(finished: asyncio.Task):
            if self._grace_tasks.get(peer_id) is finished:
                del self._grace_tasks[peer_id]

        task.add_done_callback(_forget)

    def _cancel_grace_deletion(self, peer_id: str):
        task = self._grace_tasks.pop(peer_id, None)
        if task and not task.done():
            task.cancel()
            logger.debug(f"Cancelled grace deletion for peer {peer_id}")

    async def _delete_after_grace(self, peer_id: str, session_id: str):
        await asyncio.sleep(self.grace_period)
        try:
            peer = self.store.get_peer(peer_id)
            # Only the record left behind by this very session may go
            if peer is not None and not peer.online and peer.session_id == session_id:
                self.store.delete_peer(peer_id)
                logger.info(f"Removed offline peer {peer.name} ({peer_id}) after grace period")
        except StoreUnavailableError:
            self.record_store_failure()
            logger.error(f"Could not remove offline peer {peer_id} after grace period; the reaper will retry")

    def _arm_liveness_timer(self, session_id: str):
        self._cancel_liveness_timer(session_id)
        loop = asyncio.get_running_loop()
        self._liveness_timers[session_id] = loop.call_later(self.liveness_timeout, self._on_liveness_timeout, session_id)

    def _cancel_liveness_timer(self, session_id: str):
        handle = self._liveness_timers.pop(session_id, None)
        if handle:
            handle.cancel()

    def _on_liveness_timeout(self, session_id: str):
        self._liveness_timers.pop(session_id, None)
        logger.warning(f"Liveness timeout for session {session_id}, forcing disconnect")
        task = asyncio.create_task(self._expire_session(session_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _expire_session(self, session_id: str):
        connection = self.registry.get(session_id)
        if connection is not None:
            await connection.close()
        try:
            await self.disconnect(session_id)
        except StoreUnavailableError:
            logger.error(f"Store unavailable while expiring session {session_id}")
