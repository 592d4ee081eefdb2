from typing import Dict, List, Optional

from schemas.peers import Peer, WireModel


class HealthResponse(WireModel):
    status: str
    timestamp: str
    redis: str
    uptime: float
    connections: int
    store_failures: int
    last_store_failure: Optional[float] = None
    reaper_running: bool


class PeersResponse(WireModel):
    peers: List[Peer]
    count: int
    timestamp: str


class RoomPeersResponse(PeersResponse):
    room_id: str


class StatsResponse(WireModel):
    total_connections: int
    connections_by_transport: Dict[str, int]
    liveness_timers: int
    grace_deletions_scheduled: int
    store_failures: int
    last_store_failure: Optional[float] = None


class CleanupResponse(WireModel):
    message: str
    timestamp: str
    expired_requests: int
    stale_peers_evicted: int
    stale_peers_corrected: int
    offline_peers_removed: int
    total_removed: int
    errors: List[str]
