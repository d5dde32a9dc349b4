"""Seed runner, crawlers, folder walker and the orchestrator tying them together."""

from .backfill import BackfillCrawler
from .context import BatchResult, SyncServices, store_batch
from .folder_walker import FolderWalker
from .forward import ForwardCrawler
from .maintenance import MaintenanceService
from .orchestrator import SyncOrchestrator
from .seed import SeedPhaseRunner

__all__ = [
    "BackfillCrawler",
    "BatchResult",
    "FolderWalker",
    "ForwardCrawler",
    "MaintenanceService",
    "SeedPhaseRunner",
    "SyncOrchestrator",
    "SyncServices",
    "store_batch",
]
