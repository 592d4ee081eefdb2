import time
from typing import Callable, List

import redis
from pydantic import ValidationError

from constants import PENDING_REQUEST_TTL_SECONDS
from errors import translate_store_errors
from logging_config import get_logger
from redis_keys import REDIS_PENDING_KEY, REDIS_PENDING_EXPIRY_KEY, pending_index_member, split_pending_index_member
from schemas.peers import PendingRequest

logger = get_logger(__name__)


class PendingRequestQueue:
    """Undeliverable envelopes held per receiver until drained or expired.

    Each receiver has a hash of request id -> request JSON. A single sorted set
    indexes every entry by its expiry so sweeps never scan receivers.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int = PENDING_REQUEST_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_client = redis_client
        self.ttl = ttl
        self.clock = clock

    @translate_store_errors
    def enqueue(self, request: PendingRequest) -> PendingRequest:
        key = REDIS_PENDING_KEY.format(receiver_id=request.receiver_id)
        remaining = max(int(request.expires_at - self.clock()) + 1, 1)
        current_ttl = self.redis_client.ttl(key)
        pipe = self.redis_client.pipeline()
        pipe.hset(key, request.request_id, request.model_dump_json())
        # Only ever extend: a re-queued older entry must not cut short newer ones
        if current_ttl < remaining:
            pipe.expire(key, remaining)
        pipe.zadd(REDIS_PENDING_EXPIRY_KEY, {pending_index_member(request.receiver_id, request.request_id): request.expires_at})
        pipe.execute()
        logger.debug(f"Queued {request.kind.value} request {request.request_id} from {request.sender_id} to {request.receiver_id}")
        return request

    @translate_store_errors
    def drain(self, receiver_id: str) -> List[PendingRequest]:
        """Remove and return every live entry for the receiver."""
        key = REDIS_PENDING_KEY.format(receiver_id=receiver_id)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hgetall(key)
        pipe.delete(key)
        raw_entries, _ = pipe.execute()
        if not raw_entries:
            return []

        self.redis_client.zrem(
            REDIS_PENDING_EXPIRY_KEY,
            *[pending_index_member(receiver_id, request_id) for request_id in raw_entries],
        )
        live = self._live_entries(raw_entries)
        dropped = len(raw_entries) - len(live)
        logger.debug(f"Drained {len(live)} pending requests for {receiver_id} ({dropped} expired or unreadable)")
        return live

    @translate_store_errors
    def peek(self, receiver_id: str) -> List[PendingRequest]:
        raw_entries = self.redis_client.hgetall(REDIS_PENDING_KEY.format(receiver_id=receiver_id))
        return self._live_entries(raw_entries)

    @translate_store_errors
    def sweep(self) -> int:
        """Remove every entry whose expiry has passed, for all receivers."""
        now = self.clock()
        members = self.redis_client.zrangebyscore(REDIS_PENDING_EXPIRY_KEY, "-inf", now)
        if not members:
            return 0
        pipe = self.redis_client.pipeline()
        for member in members:
            receiver_id, request_id = split_pending_index_member(member)
            pipe.hdel(REDIS_PENDING_KEY.format(receiver_id=receiver_id), request_id)
        pipe.zrem(REDIS_PENDING_EXPIRY_KEY, *members)
        pipe.execute()
        logger.info(f"Swept {len(members)} expired pending requests")
        return len(members)

    def _live_entries(self, raw_entries: dict) -> List[PendingRequest]:
        now = self.clock()
        live = []
        for request_id, raw in raw_entries.items():
            try:
                request = PendingRequest.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(f"Discarding unreadable pending request {request_id}: {e}")
                continue
            if request.is_expired(now):
                continue
            live.append(request)
        live.sort(key=lambda r: r.created_at)
        return live
