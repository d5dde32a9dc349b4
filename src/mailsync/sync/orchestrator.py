"""Account-level coordination of the seed runner, crawlers and folder walker.

The orchestrator owns every sync status change. Components never dispatch
each other directly: they call back into the orchestrator or hand a
continuation to the worker.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..auth.tokens import TokenGrant
from ..events import SyncStatusChanged
from ..exceptions import InvalidStateTransitionError, StateTransitionRaceError
from ..jobs.dispatcher import JobDispatcher
from ..jobs.models import JobType
from ..models import (
    CRAWLABLE_STATUSES,
    Account,
    FolderType,
    SyncCursor,
    SyncPhase,
    SyncStatus,
    utcnow,
)
from ..progress import SyncProgressReport, build_report, is_complete, unfinished_folders
from ..store.accounts import AccountStore
from .context import SyncServices

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSITION_RETRIES = 3


class SyncOrchestrator:
    """Entry points used by the rest of the system and by the sync jobs.

    Args:
        services: Stores, configuration and adapters
        dispatcher: Queues seed, crawler and walker jobs
        now: Clock, swapped in tests
    """

    def __init__(
        self,
        services: SyncServices,
        dispatcher: JobDispatcher,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.services = services
        self.dispatcher = dispatcher
        self._now = now

    @property
    def accounts(self) -> AccountStore:
        return self.services.accounts

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start_seed(self, account_id: str) -> Account:
        """Move a pending account into seeding and queue its first jobs.

        Queues the seed job, a forward crawl and a delayed backfill. Accounts
        that are not pending are returned unchanged.
        """
        account = self.accounts.get(account_id)
        if account.sync_status != SyncStatus.PENDING:
            logger.debug(
                "Seed not started, account is not pending",
                extra={"account_id": account_id, "status": account.sync_status.value},
            )
            return account

        now = self._now()
        account = self.accounts.transition_status(
            account_id,
            SyncStatus.SEEDING,
            from_status=SyncStatus.PENDING,
            reason="seed dispatched",
            sync_cursor=SyncCursor.initial(),
            sync_error=None,
            sync_started_at=now,
            last_progress_at=now,
        )
        self.services.sync_log.record(
            account_id, "sync_started", {"provider": account.provider.value}
        )
        self._emit(account_id, SyncStatus.PENDING, SyncStatus.SEEDING)

        payload = {"account_id": account_id}
        self.dispatcher.dispatch(JobType.SEED, payload)
        self.dispatcher.dispatch(JobType.FORWARD, payload)
        self.dispatcher.dispatch(
            JobType.BACKFILL,
            payload,
            delay_seconds=self.services.config.sync.backfill_start_delay_seconds,
        )
        logger.info("Sync started", extra={"account_id": account_id})
        return account

    def continue_sync(self, account_id: str) -> List[str]:
        """Queue the full-sync walker for the next unfinished folders.

        Up to :meth:`get_max_parallel_folders` folders are walked at once.
        When no folder is left the account is settled.

        Returns:
            Ids of the walker jobs queued by this call
        """
        account = self.accounts.get(account_id)
        if account.sync_status != SyncStatus.SYNCING or account.needs_reauth:
            logger.debug(
                "Full sync not continued",
                extra={"account_id": account_id, "status": account.sync_status.value},
            )
            return []

        remaining = unfinished_folders(account)
        if not remaining:
            self._settle(account)
            return []

        dispatched = []
        for folder in remaining[: self.get_max_parallel_folders(account)]:
            job_id = self.dispatcher.dispatch(
                JobType.FOLDER_SYNC, {"account_id": account_id, "folder": folder.value}
            )
            if job_id:
                dispatched.append(job_id)
        logger.debug(
            "Full sync continued",
            extra={
                "account_id": account_id,
                "remaining": [folder.value for folder in remaining],
                "dispatched": len(dispatched),
            },
        )
        return dispatched

    def fetch_new_emails(self, account_id: str) -> Optional[str]:
        """Queue a forward crawl; None when ineligible or one is already queued."""
        account = self.accounts.get(account_id)
        if not account.can_run_forward_crawler():
            logger.debug("Forward crawl not eligible", extra={"account_id": account_id})
            return None
        return self.dispatcher.dispatch(JobType.FORWARD, {"account_id": account_id})

    def get_sync_progress(self, account_id: str) -> SyncProgressReport:
        account = self.accounts.get(account_id)
        return build_report(account, self.services.messages.count(account_id))

    def mark_sync_completed(self, account_id: str) -> Account:
        """Record that the initial import finished.

        Raises:
            InvalidStateTransitionError: If the account cannot complete from its status
        """

        def attempt() -> Account:
            current = self.accounts.get(account_id)
            if current.sync_status == SyncStatus.COMPLETED:
                return current
            now = self._now()
            updated = self.accounts.transition_status(
                account_id,
                SyncStatus.COMPLETED,
                from_status=current.sync_status,
                reason="initial sync finished",
                initial_sync_completed_at=current.initial_sync_completed_at or now,
                last_sync_at=now,
                sync_error=None,
            )
            self.services.sync_log.record(
                account_id,
                "sync_completed",
                {"messages": self.services.messages.count(account_id)},
            )
            self._emit(account_id, current.sync_status, SyncStatus.COMPLETED)
            return updated

        return self._retry_race(attempt, account_id)

    def mark_sync_failed(self, account_id: str, error: Optional[str] = None) -> Account:
        """Halt the account with ``error`` as its visible sync error."""
        message = error or "Sync failed"

        def attempt() -> Account:
            current = self.accounts.get(account_id)
            if current.sync_status == SyncStatus.FAILED:
                if current.needs_reauth:
                    return current
                return self.accounts.update_fields(account_id, sync_error=message)
            updated = self.accounts.transition_status(
                account_id,
                SyncStatus.FAILED,
                from_status=current.sync_status,
                reason=message,
                sync_error=message,
                last_sync_at=self._now(),
            )
            self.services.sync_log.record(account_id, "sync_error", {"error": message})
            self._emit(account_id, current.sync_status, SyncStatus.FAILED, error=message)
            return updated

        account = self._retry_race(attempt, account_id)
        logger.error("Sync failed", extra={"account_id": account_id, "error": message})
        return account

    # ------------------------------------------------------------------
    # Transitions used by the sync components
    # ------------------------------------------------------------------

    def transition_to_full_sync(self, account_id: str) -> Account:
        """Hand a seeded account to the full-sync walker and backfill."""
        current = self.accounts.get(account_id)
        cursor = current.sync_cursor.model_copy(update={"phase": SyncPhase.FULL})
        updated = self.accounts.transition_status(
            account_id,
            SyncStatus.SYNCING,
            from_status=SyncStatus.SEEDING,
            reason="priority folders seeded",
            sync_cursor=cursor,
            last_progress_at=self._now(),
        )
        self._emit(account_id, SyncStatus.SEEDING, SyncStatus.SYNCING)
        return updated

    def complete_backfill(self, account_id: str) -> Account:
        now = self._now()
        account = self.accounts.update_fields(
            account_id,
            backfill_complete=True,
            last_backfill_at=now,
            last_progress_at=now,
        )
        self.services.sync_log.record(
            account_id, "backfill_completed", {"backfill_cursor": account.backfill_uid_cursor}
        )
        logger.info("Backfill completed", extra={"account_id": account_id})
        return self._settle(account)

    def update_sync_cursor(
        self, account_id: str, folder: FolderType, *, synced: int, total: Optional[int]
    ) -> SyncCursor:
        return self.accounts.update_folder_progress(account_id, folder, synced=synced, total=total)

    def _settle(self, account: Account) -> Account:
        """Complete a syncing account once its progress says there is nothing left."""
        if account.sync_status != SyncStatus.SYNCING or not is_complete(account):
            return account
        try:
            return self.mark_sync_completed(account.id)
        except (StateTransitionRaceError, InvalidStateTransitionError) as exc:
            logger.debug(
                "Account changed before it could be completed",
                extra={"account_id": account.id, "error": str(exc)},
            )
            return self.accounts.get(account.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_accounts_needing_sync(self) -> List[Account]:
        return [account for account in self.accounts.list([SyncStatus.PENDING]) if account.is_active]

    def get_accounts_for_incremental_sync(self) -> List[Account]:
        interval = timedelta(minutes=self.services.config.scheduler.forward_interval_minutes)
        return self.accounts.due_for_forward_sync(CRAWLABLE_STATUSES, self._now() - interval)

    def get_imap_folder_name(self, account: Account, folder: FolderType) -> str:
        return self.services.adapter_for(account).get_folder_name(folder)

    def get_max_parallel_folders(self, account: Account) -> int:
        return self.services.adapter_for(account).get_max_parallel_folders()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def reauthenticate(
        self,
        account_id: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_in: int = 3600,
        password: Optional[str] = None,
    ) -> Account:
        """Store fresh credentials, close the token breaker and return a failed account to pending."""
        current = self.accounts.get(account_id)
        if access_token:
            grant = TokenGrant(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in)
            self.accounts.record_token_success(
                account_id,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=grant.expires_at(self._now()),
            )
        elif refresh_token:
            self.accounts.update_fields(account_id, refresh_token=refresh_token, token_expires_at=None)
        if password:
            self.accounts.update_fields(account_id, password=password)
        account = self.accounts.update_fields(
            account_id, consecutive_failures=0, needs_reauth=False, sync_error=None
        )
        if current.sync_status == SyncStatus.FAILED:
            account = self.accounts.transition_status(
                account_id,
                SyncStatus.PENDING,
                from_status=SyncStatus.FAILED,
                operator=True,
                reason="re-authenticated",
            )
            self._emit(account_id, SyncStatus.FAILED, SyncStatus.PENDING)
        self.services.sync_log.record(
            account_id, "reauthenticated", {"previous_status": current.sync_status.value}
        )
        logger.info("Account re-authenticated", extra={"account_id": account_id})
        return account

    def reset_account(self, account_id: str, *, keep_account: bool = True) -> Optional[Account]:
        """Delete the account's messages and sync log, then reset or remove it.

        Returns:
            The reset account, or None when it was deleted
        """
        current = self.accounts.get(account_id)
        removed = self.services.messages.delete_for_account(account_id)
        self.services.sync_log.delete_for_account(account_id)
        if not keep_account:
            self.accounts.delete(account_id)
            logger.info(
                "Account deleted",
                extra={"account_id": account_id, "messages_removed": removed},
            )
            return None

        fields: Dict[str, Any] = {
            "sync_cursor": SyncCursor.initial(),
            "forward_uid_cursor": None,
            "backfill_uid_cursor": None,
            "backfill_complete": False,
            "uid_epoch": current.uid_epoch + 1,
            "sync_error": None,
            "sync_started_at": None,
            "initial_sync_completed_at": None,
            "last_forward_sync_at": None,
            "last_backfill_at": None,
            "last_sync_at": None,
            "last_progress_at": None,
        }
        if current.sync_status == SyncStatus.PENDING:
            account = self.accounts.update_fields(account_id, **fields)
        else:
            account = self.accounts.transition_status(
                account_id,
                SyncStatus.PENDING,
                from_status=current.sync_status,
                operator=True,
                reason="reset",
                **fields,
            )
            self._emit(account_id, current.sync_status, SyncStatus.PENDING)
        self.services.sync_log.record(account_id, "account_reset", {"messages_removed": removed})
        logger.info(
            "Account reset",
            extra={"account_id": account_id, "messages_removed": removed},
        )
        return account

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _emit(
        self,
        account_id: str,
        old_status: SyncStatus,
        new_status: SyncStatus,
        *,
        error: Optional[str] = None,
    ) -> None:
        account = self.accounts.find(account_id)
        self.services.events.emit(
            SyncStatusChanged(
                account_id=account_id,
                old_status=old_status,
                new_status=new_status,
                needs_reauth=bool(account and account.needs_reauth),
                error=error,
            )
        )

    @staticmethod
    def _retry_race(attempt: Callable[[], T], account_id: str) -> T:
        for retry in range(_TRANSITION_RETRIES):
            try:
                return attempt()
            except StateTransitionRaceError:
                logger.debug(
                    "Status transition raced, retrying",
                    extra={"account_id": account_id, "attempt": retry + 1},
                )
        return attempt()


__all__ = ["SyncOrchestrator"]
