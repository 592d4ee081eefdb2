import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response, status

from errors import PeerNotFoundError, StoreUnavailableError
from logging_config import get_logger
from schemas.admin import CleanupResponse, HealthResponse, PeersResponse, RoomPeersResponse, StatsResponse
from schemas.peers import Peer

logger = get_logger(__name__)

admin_router = APIRouter(prefix="/api", tags=["admin"])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@admin_router.get("/health", response_model=HealthResponse)
async def health(request: Request, response: Response):
    relay = request.app.state.relay
    try:
        redis_ok = relay.store.ping()
    except StoreUnavailableError:
        redis_ok = False
    if not redis_ok:
        logger.warning("Health check failed: Redis did not answer PING")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if redis_ok else "unhealthy",
        timestamp=_now_iso(),
        redis="connected" if redis_ok else "disconnected",
        uptime=time.monotonic() - request.app.state.started_at,
        connections=len(relay.registry),
        store_failures=relay.store_failures,
        last_store_failure=relay.last_store_failure,
        reaper_running=request.app.state.reaper.running,
    )


@admin_router.get("/peers", response_model=PeersResponse)
async def list_peers(request: Request):
    peers = request.app.state.relay.store.list_peers()
    return PeersResponse(peers=peers, count=len(peers), timestamp=_now_iso())


@admin_router.get("/peers/{peer_id}", response_model=Peer)
async def get_peer(peer_id: str, request: Request):
    peer = request.app.state.relay.store.get_peer(peer_id)
    if peer is None:
        raise PeerNotFoundError(peer_id)
    return peer


@admin_router.get("/rooms/{room_id}/peers", response_model=RoomPeersResponse)
async def list_room_peers(room_id: str, request: Request):
    peers = request.app.state.relay.store.list_peers_in_room(room_id)
    logger.debug(f"Room {room_id} peers requested: {len(peers)} found")
    return RoomPeersResponse(room_id=room_id, peers=peers, count=len(peers), timestamp=_now_iso())


@admin_router.get("/stats", response_model=StatsResponse)
async def connection_stats(request: Request):
    return StatsResponse(**request.app.state.relay.stats())


@admin_router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(request: Request, response: Response):
    """Run one reaper pass now."""
    logger.info(f"Manual cleanup requested from {request.client.host if request.client else 'unknown'}")
    report = await request.app.state.reaper.run_once()
    if report.errors:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return CleanupResponse(
        message="Cleanup completed" if not report.errors else "Cleanup completed with errors",
        timestamp=_now_iso(),
        **report.to_dict(),
    )
