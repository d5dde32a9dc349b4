"""Job handlers binding queued job types to the sync components."""

from __future__ import annotations

from typing import Dict, Optional

from ..models import FolderType
from ..store.sync_log import SyncLog
from ..sync.backfill import BackfillCrawler
from ..sync.folder_walker import FolderWalker
from ..sync.forward import ForwardCrawler
from ..sync.maintenance import MaintenanceService
from ..sync.orchestrator import SyncOrchestrator
from ..sync.seed import SeedPhaseRunner
from .models import Continuation, JobType, SyncJob
from .worker import JobHandler


class BaseJobHandler:
    """Records a ``*_failed`` sync log entry once a job runs out of attempts."""

    failed_action = "job_failed"

    def __init__(self, sync_log: SyncLog) -> None:
        self.sync_log = sync_log

    def handle(self, job: SyncJob) -> Optional[Continuation]:
        raise NotImplementedError

    def failed(self, job: SyncJob, exc: BaseException) -> None:
        if job.account_id:
            self.sync_log.record(
                job.account_id,
                self.failed_action,
                {
                    "job_id": job.job_id,
                    "attempts": job.attempts,
                    "error": str(exc),
                    **{key: value for key, value in job.payload.items() if key != "account_id"},
                },
            )


class SeedJobHandler(BaseJobHandler):
    """Seed failures are fatal for the account."""

    failed_action = "seed_failed"

    def __init__(self, runner: SeedPhaseRunner, orchestrator: SyncOrchestrator, sync_log: SyncLog) -> None:
        super().__init__(sync_log)
        self.runner = runner
        self.orchestrator = orchestrator

    def handle(self, job: SyncJob) -> Optional[Continuation]:
        self.runner.run(job.payload["account_id"])
        return None

    def failed(self, job: SyncJob, exc: BaseException) -> None:
        super().failed(job, exc)
        self.orchestrator.mark_sync_failed(job.payload["account_id"], f"Seed failed: {exc}")


class ForwardJobHandler(BaseJobHandler):
    failed_action = "forward_failed"

    def __init__(self, crawler: ForwardCrawler, sync_log: SyncLog) -> None:
        super().__init__(sync_log)
        self.crawler = crawler

    def handle(self, job: SyncJob) -> Optional[Continuation]:
        self.crawler.run(job.payload["account_id"])
        return None


class BackfillJobHandler(BaseJobHandler):
    """A failed batch is logged only; the next backfill resumes from the stored cursor."""

    failed_action = "backfill_failed"

    def __init__(self, crawler: BackfillCrawler, sync_log: SyncLog) -> None:
        super().__init__(sync_log)
        self.crawler = crawler

    def handle(self, job: SyncJob) -> Optional[Continuation]:
        folder = job.payload.get("folder")
        return self.crawler.run(job.payload["account_id"], FolderType(folder) if folder else None)


class FolderSyncJobHandler(BaseJobHandler):
    failed_action = "folder_sync_failed"

    def __init__(self, walker: FolderWalker, sync_log: SyncLog) -> None:
        super().__init__(sync_log)
        self.walker = walker

    def handle(self, job: SyncJob) -> Optional[Continuation]:
        return self.walker.run(job.payload["account_id"], FolderType(job.payload["folder"]))


class PruneJobHandler(BaseJobHandler):
    failed_action = "prune_failed"

    def __init__(self, maintenance: MaintenanceService, sync_log: SyncLog) -> None:
        super().__init__(sync_log)
        self.maintenance = maintenance

    def handle(self, job: SyncJob) -> Optional[Continuation]:
        self.maintenance.prune()
        return None


def build_handlers(
    *,
    orchestrator: SyncOrchestrator,
    seed: SeedPhaseRunner,
    forward: ForwardCrawler,
    backfill: BackfillCrawler,
    walker: FolderWalker,
    maintenance: MaintenanceService,
    sync_log: SyncLog,
) -> Dict[JobType, JobHandler]:
    handlers: Dict[JobType, JobHandler] = {
        JobType.SEED: SeedJobHandler(seed, orchestrator, sync_log),
        JobType.FORWARD: ForwardJobHandler(forward, sync_log),
        JobType.BACKFILL: BackfillJobHandler(backfill, sync_log),
        JobType.FOLDER_SYNC: FolderSyncJobHandler(walker, sync_log),
        JobType.PRUNE: PruneJobHandler(maintenance, sync_log),
    }
    missing = set(JobType) - set(handlers)
    if missing:
        raise RuntimeError(f"No handler for job types: {sorted(job_type.value for job_type in missing)}")
    return handlers


__all__ = [
    "BackfillJobHandler",
    "BaseJobHandler",
    "FolderSyncJobHandler",
    "ForwardJobHandler",
    "PruneJobHandler",
    "SeedJobHandler",
    "build_handlers",
]
