"""Backfill crawler: walks the UID history downwards below the live boundary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..adapters.base import MailboxSession
from ..exceptions import ReauthRequiredError
from ..jobs.models import Continuation, JobType
from ..models import CRAWLABLE_STATUSES, FolderType, utcnow
from .context import BatchResult, SyncServices, store_batch

if TYPE_CHECKING:
    from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillBatch:
    """What one invocation learned from the mailbox."""

    result: BatchResult
    cursor: Optional[int]
    has_more: bool


class BackfillCrawler:
    """Fetches one batch of older messages per invocation.

    Each batch inspects a window of ``backfill_window`` UIDs below the cursor,
    newest first, and downloads at most ``backfill_batch_size`` messages that
    are not stored yet. While older UIDs remain the crawler returns a
    continuation for the next batch.
    """

    def __init__(self, services: SyncServices, orchestrator: "SyncOrchestrator") -> None:
        self.services = services
        self.orchestrator = orchestrator

    def run(self, account_id: str, folder: Optional[FolderType] = None) -> Optional[Continuation]:
        account = self.services.find_account(account_id)
        if account is None:
            logger.warning("Backfill for unknown account", extra={"account_id": account_id})
            return None
        if not account.can_run_backfill_crawler() or account.sync_status not in CRAWLABLE_STATUSES:
            logger.debug(
                "Backfill skipped, account not eligible",
                extra={
                    "account_id": account_id,
                    "status": account.sync_status.value,
                    "backfill_complete": account.backfill_complete,
                },
            )
            return None

        adapter = self.services.adapter_for(account)
        target = folder or adapter.backfill_folder()
        if not account.is_folder_enabled(target):
            logger.info(
                "Backfill folder disabled, nothing to backfill",
                extra={"account_id": account_id, "folder": target.value},
            )
            self.orchestrator.complete_backfill(account_id)
            return None

        try:
            batch = adapter.run(account, lambda s: self._batch(s, account_id, target), "backfill_batch")
        except ReauthRequiredError:
            logger.info("Backfill skipped, re-authentication required", extra={"account_id": account_id})
            return None

        self.services.sync_log.record(
            account_id,
            "backfill_batch",
            {
                "folder": target.value,
                "fetched": batch.result.fetched,
                "stored": batch.result.stored,
                "skipped": batch.result.skipped,
                "errors": batch.result.errors,
                "backfill_cursor": batch.cursor,
                "has_more": batch.has_more,
            },
        )
        logger.info(
            "Backfill batch finished",
            extra={
                "account_id": account_id,
                "folder": target.value,
                "fetched": batch.result.fetched,
                "backfill_cursor": batch.cursor,
                "has_more": batch.has_more,
            },
        )

        if not batch.has_more:
            self.orchestrator.complete_backfill(account_id)
            return None

        payload: Dict[str, Any] = {"account_id": account_id}
        if folder is not None:
            payload["folder"] = folder.value
        return Continuation(
            job_type=JobType.BACKFILL,
            payload=payload,
            delay_seconds=self.services.config.sync.backfill_delay_seconds,
        )

    def _start_cursor(self, session: MailboxSession, forward_cursor: Optional[int], folder: FolderType) -> int:
        """Exclusive upper bound for the first window."""
        if forward_cursor:
            return forward_cursor + 1
        newest = session.fetch_latest_uids(folder, 1)
        if newest:
            return newest[0] + 1
        return session.select(folder).exists + 1

    def _batch(self, session: MailboxSession, account_id: str, folder: FolderType) -> BackfillBatch:
        settings = self.services.config.sync
        account = self.services.accounts.get(account_id)
        cursor = account.backfill_uid_cursor
        if cursor is None:
            cursor = self._start_cursor(session, account.forward_uid_cursor, folder)

        low = max(1, cursor - settings.backfill_window)
        high = cursor - 1
        candidates = sorted(session.fetch_uid_range(folder, low, high), reverse=True)
        known = self.services.messages.existing_uids(
            account_id, session.adapter.mailbox_for(folder), candidates
        )

        processed: List[int] = []
        to_fetch: List[int] = []
        for uid in candidates:
            if uid not in known:
                if len(to_fetch) >= settings.backfill_batch_size:
                    break
                to_fetch.append(uid)
            processed.append(uid)

        result = store_batch(self.services.messages, account_id, session.fetch_parsed(folder, to_fetch))
        result.skipped += len(processed) - len(to_fetch)

        remaining = len(processed) < len(candidates)
        new_cursor = min(processed) if remaining else low
        stored_cursor = self.services.accounts.lower_backfill_cursor(
            account_id, new_cursor, uid_epoch=account.uid_epoch
        )
        self.services.accounts.update_fields(account_id, last_backfill_at=utcnow())
        # A discarded cursor means the UIDs were reset mid-batch; start over
        return BackfillBatch(
            result=result,
            cursor=stored_cursor,
            has_more=remaining or low > 1 or stored_cursor is None,
        )


__all__ = ["BackfillBatch", "BackfillCrawler"]
