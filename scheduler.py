import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, get_settings
from sweeper import DueTransactionSweeper


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        sweeper: DueTransactionSweeper,
        settings: Optional[Settings] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        recurring: Optional[Callable[[], int]] = None,
    ) -> None:
        self.sweeper = sweeper
        self.recurring = recurring
        self.settings = settings or get_settings()
        self.scheduler = scheduler or BackgroundScheduler(
            timezone=self.settings.timezone
        )

    def run_once(self, source: str = "manual") -> int:
        logger.info(f"sweep_run: source={source}")
        if self.recurring is not None:
            try:
                posted = self.recurring()
                logger.info(f"recurring_run: source={source} posted={posted}")
            except Exception:
                logger.exception(f"recurring_run: source={source} failed")
        count = self.sweeper.process_due_all()
        logger.info(f"sweep_run: source={source} accounts_updated={count}")
        return count

    def _run_job(self, source: str) -> None:
        try:
            self.run_once(source)
        except Exception:
            logger.exception(f"sweep_run: source={source} failed")

    def start(self) -> None:
        if self.scheduler.running:
            logger.info("Scheduler already running")
            return

        self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.sweep_hour, minute=self.settings.sweep_minute
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="due_sweep_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(minutes=self.settings.sweep_safety_interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["safety_net"],
            id="due_sweep_safety",
            replace_existing=True,
            misfire_grace_time=300,
            coalesce=True,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {self.settings.sweep_hour:02d}:{self.settings.sweep_minute:02d} "
            f"sweep and {self.settings.sweep_safety_interval_minutes}-minute safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
