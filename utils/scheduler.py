import logging
from typing import Dict, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import settings
from utils.allocation import AllocationEngine
from utils.errors import StoreError
from utils.globals import ROLES

log = logging.getLogger(__name__)


class EngineScheduler:
    """Periodic caller of the passive allocation engine."""

    def __init__(self, allocation: AllocationEngine, interval_seconds: int = settings.SWEEP_INTERVAL_SECONDS,
                 expiry_seconds: int = settings.OFFER_EXPIRY_SECONDS, reoffer: bool = settings.AUTO_REOFFER):
        self.allocation = allocation
        self.interval_seconds = interval_seconds
        self.expiry_seconds = expiry_seconds
        self.reoffer = reoffer
        self.scheduler = AsyncIOScheduler()

    async def expire_pending_offers(self) -> Dict[str, List[int]]:
        """
        Sweep both roles for offers nobody answered in time.
        A failing role is logged and retried on the next tick.
        """
        expired: Dict[str, List[int]] = {}
        for role in ROLES:
            try:
                expired[role] = await self.allocation.sweep_expired(role, self.expiry_seconds, reoffer=self.reoffer)
            except StoreError:
                log.exception("Offer sweep for %s failed, will retry next tick", role)
                expired[role] = []
        if any(expired.values()):
            log.info("Expired offers: %s", expired)
        return expired

    def register_jobs(self) -> None:
        self.scheduler.add_job(
            self.expire_pending_offers,
            'interval',
            seconds=self.interval_seconds,
            id='expire_pending_offers',
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def start(self) -> None:
        """Start scheduler with all jobs."""
        self.register_jobs()
        self.scheduler.start()
        log.info("Scheduler started (offer sweep every %ss, expiry %ss)", self.interval_seconds, self.expiry_seconds)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
