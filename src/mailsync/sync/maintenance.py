"""Periodic housekeeping: starting pending accounts, rescuing stalled ones, pruning."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ..exceptions import InvalidStateTransitionError, StateTransitionRaceError
from ..jobs.dispatcher import JobDispatcher
from ..jobs.models import JobStatus, JobType
from ..jobs.queue import JobQueue
from ..models import Account, SyncStatus, utcnow
from .context import SyncServices
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

FINISHED_JOB_RETENTION = timedelta(days=7)


class MaintenanceService:
    """Watchdog and incremental ticks plus the retention jobs."""

    def __init__(
        self,
        services: SyncServices,
        orchestrator: SyncOrchestrator,
        dispatcher: JobDispatcher,
        queue: JobQueue,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.services = services
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.queue = queue
        self._now = now

    def watchdog_tick(self) -> Dict[str, int]:
        """Start pending accounts and re-dispatch work for stalled ones.

        Unique locks on the crawler and walker jobs keep the re-dispatch from
        duplicating work that is still queued.
        """
        started = 0
        for account in self.orchestrator.get_accounts_needing_sync():
            try:
                self.orchestrator.start_seed(account.id)
            except (StateTransitionRaceError, InvalidStateTransitionError) as exc:
                logger.debug(
                    "Account changed before seed start",
                    extra={"account_id": account.id, "error": str(exc)},
                )
                continue
            started += 1

        cutoff = self._now() - timedelta(minutes=self.services.config.scheduler.stuck_after_minutes)
        stalled = self.services.accounts.stalled([SyncStatus.SEEDING, SyncStatus.SYNCING], cutoff)
        for account in stalled:
            self._rescue(account)

        if started or stalled:
            logger.info("Watchdog tick", extra={"started": started, "rescued": len(stalled)})
        return {"started": started, "rescued": len(stalled)}

    def _rescue(self, account: Account) -> None:
        logger.warning(
            "Rescuing stalled sync",
            extra={
                "account_id": account.id,
                "status": account.sync_status.value,
                "last_progress_at": account.last_progress_at.isoformat() if account.last_progress_at else None,
            },
        )
        payload = {"account_id": account.id}
        if account.sync_status == SyncStatus.SEEDING and not self._has_open_job(JobType.SEED, account.id):
            self.dispatcher.dispatch(JobType.SEED, payload)
        if account.sync_status == SyncStatus.SYNCING:
            self.orchestrator.continue_sync(account.id)
        if account.is_verified:
            self.dispatcher.dispatch(JobType.FORWARD, payload)
        if not account.backfill_complete:
            self.dispatcher.dispatch(JobType.BACKFILL, payload)

    def _has_open_job(self, job_type: JobType, account_id: str) -> bool:
        for status in (JobStatus.PENDING, JobStatus.RUNNING):
            if self.queue.list_jobs(job_type=job_type, status=status, account_id=account_id):
                return True
        return False

    def incremental_tick(self) -> int:
        """Queue a forward crawl for every account due one."""
        dispatched = 0
        for account in self.orchestrator.get_accounts_for_incremental_sync():
            if self.orchestrator.fetch_new_emails(account.id):
                dispatched += 1
        logger.debug("Incremental tick", extra={"dispatched": dispatched})
        return dispatched

    def prune(self) -> Dict[str, int]:
        """Apply the message retention windows and drop old finished jobs."""
        retention = self.services.config.retention
        now = self._now()
        counts = {
            "messages_pruned": self.services.messages.prune_folders(now - timedelta(days=retention.trash_days)),
            "bodies_cleared": self.services.messages.clear_bodies(now - timedelta(days=retention.body_days)),
            "jobs_purged": self.queue.purge_finished(now - FINISHED_JOB_RETENTION),
        }
        logger.info("Prune finished", extra=counts)
        return counts

    def prune_sync_log(self, days: Optional[int] = None) -> int:
        """Delete sync log entries older than ``days``; operator command only."""
        days = days or self.services.config.retention.sync_log_days
        removed = self.services.sync_log.prune(self._now() - timedelta(days=days))
        logger.info("Sync log pruned", extra={"removed": removed, "days": days})
        return removed


__all__ = ["FINISHED_JOB_RETENTION", "MaintenanceService"]
