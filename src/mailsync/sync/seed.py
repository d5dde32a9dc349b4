"""Seed phase: newest messages of the priority folders, fetched first."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict

from ..adapters.base import MailboxSession
from ..adapters.connection import is_transient_error
from ..exceptions import FolderNotFoundError, ReauthRequiredError, TokenRefreshError
from ..models import FolderType, SyncStatus
from .context import SyncServices, store_batch

if TYPE_CHECKING:
    from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SeedPhaseRunner:
    """Fetches the newest ``seed_count`` messages of each priority folder.

    Each folder is recorded in the structured cursor as ``(seeded, total)`` so
    the full-sync walker resumes behind the seeded messages. A folder that
    fails is logged and counted as zero; a failed token refresh fails the
    whole seed.
    """

    def __init__(self, services: SyncServices, orchestrator: "SyncOrchestrator") -> None:
        self.services = services
        self.orchestrator = orchestrator

    def run(self, account_id: str) -> int:
        """Seed the account and hand it over to the full sync.

        Returns:
            Number of messages stored

        Raises:
            TokenRefreshError: If the access token could not be refreshed
        """
        account = self.services.accounts.get(account_id)
        if account.sync_status != SyncStatus.SEEDING:
            logger.info(
                "Seed skipped, account is not seeding",
                extra={"account_id": account_id, "status": account.sync_status.value},
            )
            return 0

        adapter = self.services.adapter_for(account)
        try:
            account = adapter.ensure_token(account)
        except ReauthRequiredError:
            raise
        except TokenRefreshError as exc:
            self.orchestrator.mark_sync_failed(account_id, f"Token refresh failed: {exc}")
            raise

        folders = [
            folder for folder in FolderType.priority_folders() if account.is_folder_enabled(folder)
        ]

        def work(session: MailboxSession) -> Dict[FolderType, int]:
            return {folder: self._seed_folder(session, account_id, folder) for folder in folders}

        stored = adapter.run(account, work, "seed")
        total = sum(stored.values())

        self.orchestrator.transition_to_full_sync(account_id)
        self.services.sync_log.record(
            account_id,
            "seed_completed",
            {"stored": total, "folders": {folder.value: count for folder, count in stored.items()}},
        )
        logger.info("Seed completed", extra={"account_id": account_id, "fetched": total})
        self.orchestrator.continue_sync(account_id)
        return total

    def _seed_folder(self, session: MailboxSession, account_id: str, folder: FolderType) -> int:
        accounts = self.services.accounts
        try:
            status = session.select(folder)
            if status.is_empty:
                accounts.update_folder_progress(account_id, folder, synced=0, total=0)
                return 0
            parsed = session.fetch_latest_messages(folder, self.services.config.sync.seed_count)
            result = store_batch(self.services.messages, account_id, parsed)
            accounts.update_folder_progress(
                account_id,
                folder,
                synced=min(result.fetched, status.exists),
                total=status.exists,
            )
        except FolderNotFoundError:
            logger.warning(
                "Seed folder missing, recorded as empty",
                extra={"account_id": account_id, "folder": folder.value},
            )
            accounts.update_folder_progress(account_id, folder, synced=0, total=0)
            return 0
        except Exception as exc:  # noqa: BLE001
            if is_transient_error(exc):
                raise
            logger.warning(
                "Seed failed for folder",
                extra={"account_id": account_id, "folder": folder.value, "error": str(exc)},
            )
            return 0

        logger.debug(
            "Folder seeded",
            extra={
                "account_id": account_id,
                "folder": folder.value,
                "fetched": result.fetched,
                "skipped": result.skipped,
                "errors": result.errors,
            },
        )
        return result.stored


__all__ = ["SeedPhaseRunner"]
