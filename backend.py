import time
from typing import Callable, List, Optional

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB, PEER_TTL_SECONDS, ROOM_TTL_SECONDS
from errors import translate_store_errors
from logging_config import get_logger
from redis_keys import REDIS_PEER_KEY, REDIS_PEER_SCAN, REDIS_SESSION_KEY, REDIS_ROOM_PEERS_KEY
from schemas.peers import Peer

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    """Build the shared Redis client. Connecting is lazy; call ping() to verify."""
    logger.info(f"Creating Redis client for {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        db=REDIS_DB,
        decode_responses=True,
        socket_connect_timeout=5,
        health_check_interval=30,
    )


class PresenceStore:
    """Peer records and room membership sets in Redis, every key carrying a TTL."""

    def __init__(
        self,
        redis_client: redis.Redis,
        peer_ttl: int = PEER_TTL_SECONDS,
        room_ttl: int = ROOM_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_client = redis_client
        self.peer_ttl = peer_ttl
        self.room_ttl = room_ttl
        self.clock = clock

    @translate_store_errors
    def ping(self) -> bool:
        return bool(self.redis_client.ping())

    @translate_store_errors
    def upsert_peer(self, peer: Peer, ttl: Optional[int] = None):
        """Write the whole peer record and bind its session id to it."""
        ttl = ttl or self.peer_ttl
        key = REDIS_PEER_KEY.format(peer_id=peer.id)
        pipe = self.redis_client.pipeline()
        # Fields that went None must not survive from the previous record
        pipe.hdel(key, "session_id", "room_id")
        pipe.hset(key, mapping=peer.to_redis())
        pipe.expire(key, ttl)
        if peer.session_id:
            pipe.set(REDIS_SESSION_KEY.format(session_id=peer.session_id), peer.id, ex=ttl)
        pipe.execute()
        logger.debug(f"Upserted peer {peer.id} (session={peer.session_id}, room={peer.room_id}, online={peer.online})")
        return peer

    @translate_store_errors
    def get_peer(self, peer_id: str) -> Optional[Peer]:
        data = self.redis_client.hgetall(REDIS_PEER_KEY.format(peer_id=peer_id))
        return Peer.from_redis(data)

    @translate_store_errors
    def get_peer_by_session(self, session_id: str) -> Optional[Peer]:
        """Resolve the peer currently bound to a transport session.

        The session index can point at a peer that has since reconnected on a
        newer session; such a hit is reported as no peer.
        """
        peer_id = self.redis_client.get(REDIS_SESSION_KEY.format(session_id=session_id))
        if not peer_id:
            return None
        peer = self.get_peer(peer_id)
        if peer is None or peer.session_id != session_id:
            logger.debug(f"Session {session_id} no longer bound to peer {peer_id}")
            return None
        return peer

    @translate_store_errors
    def update_peer(self, peer_id: str, **fields) -> Optional[Peer]:
        """Update selected fields of an existing record and refresh its TTLs.

        An online peer also refreshes its room membership, so a room never
        expires from under members that are still active.

        Returns None without writing when the record does not exist, so a late
        update cannot resurrect a deleted peer as a partial hash.
        """
        key = REDIS_PEER_KEY.format(peer_id=peer_id)
        current = Peer.from_redis(self.redis_client.hgetall(key))
        if current is None:
            return None
        updated = current.model_copy(update=fields)
        pipe = self.redis_client.pipeline()
        pipe.hset(key, mapping=updated.to_redis())
        pipe.expire(key, self.peer_ttl)
        if updated.session_id:
            pipe.expire(REDIS_SESSION_KEY.format(session_id=updated.session_id), self.peer_ttl)
        if updated.online and updated.room_id:
            # Membership lives as long as its members do
            room_key = REDIS_ROOM_PEERS_KEY.format(room_id=updated.room_id)
            pipe.sadd(room_key, peer_id)
            pipe.expire(room_key, self.room_ttl)
        pipe.execute()
        return updated

    def touch_peer(self, peer_id: str) -> Optional[Peer]:
        return self.update_peer(peer_id, last_seen=self.clock())

    def set_offline(self, peer_id: str) -> Optional[Peer]:
        return self.update_peer(peer_id, online=False, last_seen=self.clock())

    @translate_store_errors
    def delete_peer(self, peer_id: str) -> bool:
        key = REDIS_PEER_KEY.format(peer_id=peer_id)
        peer = Peer.from_redis(self.redis_client.hgetall(key))
        pipe = self.redis_client.pipeline()
        pipe.delete(key)
        if peer and peer.session_id:
            session_key = REDIS_SESSION_KEY.format(session_id=peer.session_id)
            # Only drop the index entry if it still points at this peer
            if self.redis_client.get(session_key) == peer_id:
                pipe.delete(session_key)
        deleted = pipe.execute()[0]
        logger.debug(f"Deleted peer {peer_id}: {bool(deleted)}")
        return bool(deleted)

    @translate_store_errors
    def add_to_room(self, room_id: str, peer_id: str, ttl: Optional[int] = None):
        key = REDIS_ROOM_PEERS_KEY.format(room_id=room_id)
        pipe = self.redis_client.pipeline()
        pipe.sadd(key, peer_id)
        pipe.expire(key, ttl or self.room_ttl)
        added = pipe.execute()[0]
        logger.debug(f"Peer {peer_id} added to room {room_id} ({'new' if added else 'existing'} member)")
        return bool(added)

    @translate_store_errors
    def remove_from_room(self, room_id: str, peer_id: str):
        removed = self.redis_client.srem(REDIS_ROOM_PEERS_KEY.format(room_id=room_id), peer_id)
        logger.debug(f"Peer {peer_id} removed from room {room_id}: {bool(removed)}")
        return bool(removed)

    @translate_store_errors
    def list_peers_in_room(self, room_id: str) -> List[Peer]:
        """Full records of the room's members, skipping ids whose record has expired."""
        peer_ids = self.redis_client.smembers(REDIS_ROOM_PEERS_KEY.format(room_id=room_id))
        if not peer_ids:
            return []
        pipe = self.redis_client.pipeline()
        for peer_id in sorted(peer_ids):
            pipe.hgetall(REDIS_PEER_KEY.format(peer_id=peer_id))
        peers = []
        for data in pipe.execute():
            peer = Peer.from_redis(data)
            if peer is not None:
                peers.append(peer)
        return peers

    @translate_store_errors
    def list_peers(self) -> List[Peer]:
        """Every peer record, via SCAN rather than KEYS."""
        peers = []
        for key in self.redis_client.scan_iter(match=REDIS_PEER_SCAN, count=500):
            peer = Peer.from_redis(self.redis_client.hgetall(key))
            if peer is not None:
                peers.append(peer)
        return peers
