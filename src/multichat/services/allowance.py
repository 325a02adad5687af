"""Periodic free-allowance refresh on APScheduler."""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from multichat.billing.ledger import UsageLedger
from multichat.config import BillingConfig
from multichat.log import get_logger

logger = get_logger(__name__)

JOB_ID = "free_allowance_refresh"


class AllowanceRefreshService:
    """Resets free_remaining for balances whose reset period has elapsed."""

    def __init__(self, ledger: UsageLedger, config: BillingConfig):
        self._ledger = ledger
        self._config = config
        self._scheduler = AsyncIOScheduler(timezone="UTC")

    @property
    def service_name(self) -> str:
        return "allowance_refresh"

    async def start(self) -> None:
        self._scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self._config.refresh_check_minutes),
            id=JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info(
            "allowance_refresh_started",
            interval_minutes=self._config.refresh_check_minutes,
            reset_days=self._config.free_reset_days,
        )

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("allowance_refresh_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    async def run_once(self) -> int:
        """Refresh due balances now. Returns the number of balances reset."""
        try:
            return await self._ledger.refresh_free_allowance()
        except Exception as e:
            logger.error("allowance_refresh_failed", error=str(e))
            return 0
