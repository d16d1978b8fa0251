import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cache import TTLCache
from config import get_settings


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self, cache: TTLCache, sweep_interval_secs: Optional[float] = None
    ) -> None:
        settings = get_settings()
        self.cache = cache
        self.sweep_interval_secs = (
            sweep_interval_secs or settings.cache_sweep_interval_secs
        )
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_sweep(self, source: str = "manual") -> int:
        removed = self.cache.purge_expired()
        logger.info(
            f"cache_sweep: source={source} removed={removed} "
            f"remaining={self.cache.size()}"
        )
        return removed

    def start(self) -> None:
        trigger = IntervalTrigger(seconds=self.sweep_interval_secs)
        self.scheduler.add_job(
            self._run_sweep,
            trigger,
            args=["interval"],
            id="cache_sweep",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with cache sweep every {self.sweep_interval_secs}s"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
