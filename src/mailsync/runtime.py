"""Builds a fully wired engine from configuration."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from imapclient import IMAPClient

from .adapters.base import ProviderAdapter
from .adapters.connection import ClientFactory
from .adapters.factory import create_adapter
from .auth.tokens import OAuthProviderRegistry, TokenLifecycle
from .config import MailSyncConfig
from .events import EventDispatcher
from .jobs.dispatcher import JobDispatcher
from .jobs.handlers import build_handlers
from .jobs.queue import JobQueue
from .jobs.retry_policy import RetryPolicyRegistry
from .jobs.scheduler import SyncScheduler
from .jobs.worker import SyncWorker
from .models import Provider
from .store.accounts import AccountStore
from .store.messages import MessageStore
from .store.sync_log import SyncLog
from .sync.backfill import BackfillCrawler
from .sync.context import SyncServices
from .sync.folder_walker import FolderWalker
from .sync.forward import ForwardCrawler
from .sync.maintenance import MaintenanceService
from .sync.orchestrator import SyncOrchestrator
from .sync.seed import SeedPhaseRunner

logger = logging.getLogger(__name__)


@dataclass
class MailSyncEngine:
    """Every long-lived component of one engine instance."""

    config: MailSyncConfig
    accounts: AccountStore
    messages: MessageStore
    sync_log: SyncLog
    events: EventDispatcher
    tokens: TokenLifecycle
    queue: JobQueue
    dispatcher: JobDispatcher
    services: SyncServices
    orchestrator: SyncOrchestrator
    seed: SeedPhaseRunner
    forward: ForwardCrawler
    backfill: BackfillCrawler
    walker: FolderWalker
    maintenance: MaintenanceService
    worker: SyncWorker
    scheduler: SyncScheduler

    def close(self) -> None:
        self.scheduler.shutdown()
        self.worker.close()
        self.queue.close()
        self.accounts.close()
        self.messages.close()
        self.sync_log.close()


def build_engine(
    config: Optional[MailSyncConfig] = None,
    *,
    client_factory: ClientFactory = IMAPClient,
    registry: Optional[OAuthProviderRegistry] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> MailSyncEngine:
    """Create the stores, adapters, job runtime and sync components.

    Args:
        config: Engine configuration, defaults when omitted
        client_factory: IMAP client constructor handed to every adapter
        registry: OAuth providers; built from ``config.oauth`` when omitted
        sleep: Delay function used between transport retries
    """
    config = config or MailSyncConfig()
    db_path = config.storage.database_path

    accounts = AccountStore(db_path)
    messages = MessageStore(db_path)
    sync_log = SyncLog(db_path)
    events = EventDispatcher()
    tokens = TokenLifecycle(
        accounts,
        sync_log,
        events,
        registry or OAuthProviderRegistry.from_config(config.oauth),
        config.oauth,
    )

    def adapter_factory(provider: Provider) -> ProviderAdapter:
        return create_adapter(
            provider,
            imap=config.imap,
            sync=config.sync,
            tokens=tokens,
            client_factory=client_factory,
            sleep=sleep,
        )

    services = SyncServices(
        accounts=accounts,
        messages=messages,
        sync_log=sync_log,
        events=events,
        adapter_factory=adapter_factory,
        config=config,
    )

    queue = JobQueue(config.storage.queue_path)
    policies = RetryPolicyRegistry(config.retry_policies)
    dispatcher = JobDispatcher(queue, policies)
    orchestrator = SyncOrchestrator(services, dispatcher)
    seed = SeedPhaseRunner(services, orchestrator)
    forward = ForwardCrawler(services)
    backfill = BackfillCrawler(services, orchestrator)
    walker = FolderWalker(services, orchestrator)
    maintenance = MaintenanceService(services, orchestrator, dispatcher, queue)

    handlers = build_handlers(
        orchestrator=orchestrator,
        seed=seed,
        forward=forward,
        backfill=backfill,
        walker=walker,
        maintenance=maintenance,
        sync_log=sync_log,
    )
    worker = SyncWorker(queue, dispatcher, handlers, policies, config.workers)
    scheduler = SyncScheduler(
        maintenance,
        dispatcher,
        config.scheduler,
        lock_path=config.storage.queue_path.with_suffix(".lock"),
    )
    logger.debug(
        "Engine built",
        extra={
            "database_path": str(db_path),
            "queue_path": str(config.storage.queue_path),
        },
    )
    return MailSyncEngine(
        config=config,
        accounts=accounts,
        messages=messages,
        sync_log=sync_log,
        events=events,
        tokens=tokens,
        queue=queue,
        dispatcher=dispatcher,
        services=services,
        orchestrator=orchestrator,
        seed=seed,
        forward=forward,
        backfill=backfill,
        walker=walker,
        maintenance=maintenance,
        worker=worker,
        scheduler=scheduler,
    )


__all__ = ["MailSyncEngine", "build_engine"]
