"""Full-sync folder walker: pages through whole folders by offset."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..exceptions import AdapterError, FolderNotFoundError, ReauthRequiredError, TokenRefreshError
from ..jobs.models import Continuation, JobType
from ..models import FolderType, SyncStatus
from .context import SyncServices, store_batch

if TYPE_CHECKING:
    from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class FolderWalker:
    """Processes one chunk of one folder per invocation.

    Offsets count from the newest message, so a folder seeded with its newest
    ``n`` messages resumes at offset ``n``. A chunk returns a continuation for
    the same folder until ``synced`` reaches ``total``; the orchestrator then
    picks the next folder.
    """

    def __init__(self, services: SyncServices, orchestrator: "SyncOrchestrator") -> None:
        self.services = services
        self.orchestrator = orchestrator

    def run(self, account_id: str, folder: FolderType) -> Optional[Continuation]:
        account = self.services.find_account(account_id)
        if account is None:
            logger.warning("Folder sync for unknown account", extra={"account_id": account_id})
            return None
        if account.sync_status != SyncStatus.SYNCING or account.needs_reauth or not account.is_active:
            logger.debug(
                "Folder sync skipped, account not syncing",
                extra={"account_id": account_id, "folder": folder.value, "status": account.sync_status.value},
            )
            return None

        progress = account.sync_cursor.progress_for(folder)
        if progress.is_done or not account.is_folder_enabled(folder):
            self.orchestrator.continue_sync(account_id)
            return None

        accounts = self.services.accounts
        offset = progress.synced
        adapter = self.services.adapter_for(account)
        try:
            page = adapter.fetch_page(
                account,
                folder,
                offset,
                self.services.config.sync.chunk_size,
                known=lambda uids: self.services.messages.existing_uids(
                    account_id, adapter.mailbox_for(folder), uids
                ),
            )
        except FolderNotFoundError:
            logger.warning(
                "Folder missing, recorded as empty",
                extra={"account_id": account_id, "folder": folder.value},
            )
            accounts.update_folder_progress(account_id, folder, synced=0, total=0)
            self.orchestrator.continue_sync(account_id)
            return None
        except ReauthRequiredError:
            logger.info("Folder sync skipped, re-authentication required", extra={"account_id": account_id})
            return None
        except TokenRefreshError:
            raise
        except AdapterError as exc:
            self.orchestrator.mark_sync_failed(account_id, str(exc))
            raise

        result = store_batch(self.services.messages, account_id, page.messages)
        result.skipped += len(page.uids) - len(page.messages)
        synced = min(offset + len(page.uids), page.total) if page.uids else page.total
        accounts.update_folder_progress(account_id, folder, synced=synced, total=page.total)

        self.services.sync_log.record(
            account_id,
            "chunk_completed",
            {
                "folder": folder.value,
                "offset": offset,
                "synced": synced,
                "total": page.total,
                "stored": result.stored,
                "skipped": result.skipped,
                "errors": result.errors,
            },
        )
        logger.debug(
            "Folder chunk synced",
            extra={
                "account_id": account_id,
                "folder": folder.value,
                "fetched": result.fetched,
                "skipped": result.skipped,
                "synced": synced,
                "total": page.total,
            },
        )

        if synced < page.total:
            return Continuation(
                job_type=JobType.FOLDER_SYNC,
                payload={"account_id": account_id, "folder": folder.value},
                delay_seconds=self.services.config.sync.folder_chunk_delay_seconds,
            )
        logger.info(
            "Folder fully synced",
            extra={"account_id": account_id, "folder": folder.value, "total": page.total},
        )
        self.orchestrator.continue_sync(account_id)
        return None


__all__ = ["FolderWalker"]
