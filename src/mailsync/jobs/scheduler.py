"""Periodic ticks driven by APScheduler.

Only one process may tick per data directory; the scheduler holds a file
lock for as long as it runs.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from filelock import FileLock, Timeout

from ..config import SchedulerConfig
from .dispatcher import JobDispatcher
from .models import JobType

if TYPE_CHECKING:
    from ..sync.maintenance import MaintenanceService

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the incremental and watchdog ticks and queues the prune job.

    Args:
        maintenance: Provides the tick implementations
        dispatcher: Queues the prune job on its cron schedule
        config: Tick intervals and prune schedule
        lock_path: File lock guarding against a second ticking process
    """

    def __init__(
        self,
        maintenance: "MaintenanceService",
        dispatcher: JobDispatcher,
        config: Optional[SchedulerConfig] = None,
        *,
        lock_path: Path,
    ) -> None:
        self.maintenance = maintenance
        self.dispatcher = dispatcher
        self.config = config or SchedulerConfig()
        self._lock = FileLock(str(lock_path))
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> bool:
        """Register the ticks and start them on the running event loop.

        Returns:
            False when another process already holds the scheduler lock
        """
        if self.running:
            return True
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            logger.warning(
                "Scheduler lock held by another process, ticks disabled",
                extra={"lock_path": self._lock.lock_file},
            )
            return False

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.incremental_tick,
            trigger=IntervalTrigger(minutes=self.config.forward_interval_minutes),
            id="incremental",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        scheduler.add_job(
            self.watchdog_tick,
            trigger=IntervalTrigger(minutes=self.config.watchdog_interval_minutes),
            id="watchdog",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        scheduler.add_job(
            self.dispatch_prune,
            trigger=CronTrigger.from_crontab(self.config.prune_cron),
            id="prune",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Scheduler started",
            extra={
                "forward_interval_minutes": self.config.forward_interval_minutes,
                "watchdog_interval_minutes": self.config.watchdog_interval_minutes,
                "prune_cron": self.config.prune_cron,
            },
        )
        return True

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._lock.is_locked:
            self._lock.release()
        logger.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def incremental_tick(self) -> int:
        return self.maintenance.incremental_tick()

    def watchdog_tick(self) -> None:
        self.maintenance.watchdog_tick()

    def dispatch_prune(self) -> Optional[str]:
        return self.dispatcher.dispatch(JobType.PRUNE, {})


__all__ = ["SyncScheduler"]
