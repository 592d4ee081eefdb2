import asyncio
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from constants import GRACE_PERIOD_SECONDS, REAPER_INTERVAL_SECONDS, STALE_PEER_SECONDS
from logging_config import get_logger
from relay import SignalingRelay

logger = get_logger(__name__)


@dataclass
class ReapReport:
    expired_requests: int = 0
    stale_peers_evicted: int = 0
    stale_peers_corrected: int = 0
    offline_peers_removed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return self.expired_requests + self.stale_peers_evicted + self.offline_peers_removed

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_removed"] = self.total_removed
        return data


class ScheduledReaper:
    """Periodic sweep of expired pending requests and stale presence records.

    Runs on its own interval, separate from the pending request window and the
    post-disconnect grace period. The two phases are guarded independently.
    """

    def __init__(
        self,
        relay: SignalingRelay,
        interval: float = REAPER_INTERVAL_SECONDS,
        stale_after: float = STALE_PEER_SECONDS,
        offline_after: float = GRACE_PERIOD_SECONDS,
    ):
        self.relay = relay
        self.interval = interval
        self.stale_after = stale_after
        self.offline_after = offline_after
        self.last_report: Optional[ReapReport] = None
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_forever())
            logger.info(f"Scheduled reaper started (every {self.interval} seconds)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduled reaper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_forever(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as e:
                # Keep the schedule alive; the next run starts from scratch
                logger.error(f"Reaper run failed: {e}", exc_info=True)

    async def run_once(self) -> ReapReport:
        report = ReapReport()
        loop = asyncio.get_running_loop()

        try:
            report.expired_requests = await loop.run_in_executor(None, self.relay.queue.sweep)
        except Exception as e:
            logger.error(f"Reaper failed sweeping pending requests: {e}", exc_info=True)
            report.errors.append(f"pending: {e}")

        try:
            await self._reap_peers(loop, report)
        except Exception as e:
            logger.error(f"Reaper failed scanning presence records: {e}", exc_info=True)
            report.errors.append(f"presence: {e}")

        if report.errors:
            self.relay.record_store_failure()
        self.last_report = report
        logger.info(
            f"Reaper run complete: {report.expired_requests} expired requests, "
            f"{report.stale_peers_evicted} stale peers evicted, {report.stale_peers_corrected} corrected, "
            f"{report.offline_peers_removed} offline peers removed"
        )
        return report

    async def _reap_peers(self, loop, report: ReapReport):
        store = self.relay.store
        peers = await loop.run_in_executor(None, store.list_peers)
        now = self.relay.clock()
        for peer in peers:
            idle = now - peer.last_seen
            if peer.online:
                if idle <= self.stale_after:
                    continue
                if peer.session_id in self.relay.registry:
                    # Still connected here, just quiet; do not strand it
                    store.touch_peer(peer.id)
                    report.stale_peers_corrected += 1
                elif await self.relay.evict(peer):
                    report.stale_peers_evicted += 1
            elif idle > self.offline_after and not self.relay.has_grace_task(peer.id):
                # Grace deletion was lost, e.g. the process restarted
                current = store.get_peer(peer.id)
                if current is None or current.online or current.session_id != peer.session_id:
                    continue
                store.delete_peer(peer.id)
                report.offline_peers_removed += 1
