"""Forward crawler: keeps the live view current by fetching above the UID cursor."""

from __future__ import annotations

import logging
from typing import List

from ..adapters.base import MailboxSession
from ..adapters.connection import is_transient_error
from ..exceptions import FolderNotFoundError, ReauthRequiredError
from ..jobs.retry_policy import is_rate_limited
from ..models import FolderType, utcnow
from .context import BatchResult, SyncServices, store_batch

logger = logging.getLogger(__name__)


class ForwardCrawler:
    """Fetches messages newer than ``forward_uid_cursor``.

    The first run of an account stores the newest messages and sets the cursor
    to the highest UID seen. Later runs compare the cursor with the folder's
    ``uidnext`` and only fetch when something arrived, at most
    ``forward_batch_limit`` UIDs per run. The cursor is only ever raised.
    """

    def __init__(self, services: SyncServices) -> None:
        self.services = services

    def run(self, account_id: str) -> int:
        """Crawl every forward folder of the account over one connection.

        Returns:
            Number of messages fetched

        Raises:
            Exception: Transport and rate-limit failures, for the job retry policy
        """
        account = self.services.find_account(account_id)
        if account is None:
            logger.warning("Forward crawl for unknown account", extra={"account_id": account_id})
            return 0
        if not account.can_run_forward_crawler():
            logger.debug(
                "Forward crawl skipped, account not eligible",
                extra={"account_id": account_id, "status": account.sync_status.value},
            )
            return 0

        adapter = self.services.adapter_for(account)
        folders = adapter.forward_folders()

        def work(session: MailboxSession) -> BatchResult:
            total = BatchResult()
            for folder in folders:
                total = total.merge(self._crawl_folder_safely(session, account_id, folder))
            return total

        try:
            result = adapter.run(account, work, "forward_crawl")
        except ReauthRequiredError:
            logger.info("Forward crawl skipped, re-authentication required", extra={"account_id": account_id})
            return 0
        except Exception as exc:  # noqa: BLE001
            if is_rate_limited(exc):
                logger.warning("Forward crawl rate limited", extra={"account_id": account_id, "error": str(exc)})
            else:
                self.services.accounts.update_fields(account_id, sync_error=str(exc))
            raise

        now = utcnow()
        account = self.services.accounts.update_fields(
            account_id, last_forward_sync_at=now, last_sync_at=now
        )
        if result.fetched:
            self.services.sync_log.record(
                account_id,
                "forward_fetch",
                {
                    "fetched": result.fetched,
                    "stored": result.stored,
                    "skipped": result.skipped,
                    "errors": result.errors,
                    "forward_cursor": account.forward_uid_cursor,
                },
            )
        logger.info(
            "Forward crawl finished",
            extra={
                "account_id": account_id,
                "fetched": result.fetched,
                "skipped": result.skipped,
                "forward_cursor": account.forward_uid_cursor,
            },
        )
        return result.fetched

    def _crawl_folder_safely(self, session: MailboxSession, account_id: str, folder: FolderType) -> BatchResult:
        try:
            return self._crawl_folder(session, account_id, folder)
        except FolderNotFoundError:
            logger.warning(
                "Forward folder missing", extra={"account_id": account_id, "folder": folder.value}
            )
        except Exception as exc:  # noqa: BLE001
            # Transport failures go back to the session retry with a fresh connection
            if is_rate_limited(exc) or is_transient_error(exc):
                raise
            logger.warning(
                "Forward crawl failed for folder",
                extra={"account_id": account_id, "folder": folder.value, "error": str(exc)},
            )
        return BatchResult()

    def _crawl_folder(self, session: MailboxSession, account_id: str, folder: FolderType) -> BatchResult:
        accounts = self.services.accounts
        cursor = accounts.get(account_id).forward_uid_cursor
        status = session.select(folder)

        if cursor and status.uidnext <= cursor:
            logger.warning(
                "UID reset detected, cursors cleared",
                extra={
                    "account_id": account_id,
                    "folder": folder.value,
                    "forward_cursor": cursor,
                    "uidnext": status.uidnext,
                },
            )
            accounts.reset_uid_cursors(account_id)
            self.services.sync_log.record(
                account_id,
                "uid_reset",
                {"folder": folder.value, "forward_cursor": cursor, "uidnext": status.uidnext},
            )
            cursor = None

        if not cursor:
            uids = session.fetch_latest_uids(folder, self.services.config.sync.forward_bootstrap_count)
            if not uids:
                if status.uidnext - 1 > 0:
                    accounts.advance_forward_cursor(account_id, status.uidnext - 1)
                return BatchResult()
        else:
            if status.uidnext <= cursor + 1:
                logger.debug(
                    "No new messages",
                    extra={"account_id": account_id, "folder": folder.value, "forward_cursor": cursor},
                )
                return BatchResult()
            uids = session.fetch_uids_after(folder, cursor)[: self.services.config.sync.forward_batch_limit]
            if not uids:
                accounts.advance_forward_cursor(account_id, status.uidnext - 1)
                return BatchResult()

        result = self._store_new(session, account_id, folder, uids)
        stored_cursor = accounts.advance_forward_cursor(account_id, max(uids))
        logger.debug(
            "Forward folder crawled",
            extra={
                "account_id": account_id,
                "folder": folder.value,
                "fetched": result.fetched,
                "skipped": result.skipped,
                "forward_cursor": stored_cursor,
            },
        )
        return result

    def _store_new(
        self, session: MailboxSession, account_id: str, folder: FolderType, uids: List[int]
    ) -> BatchResult:
        known = self.services.messages.existing_uids(
            account_id, session.adapter.mailbox_for(folder), uids
        )
        parsed = session.fetch_parsed(folder, [uid for uid in uids if uid not in known])
        result = store_batch(self.services.messages, account_id, parsed)
        result.skipped += len(known)
        return result


__all__ = ["ForwardCrawler"]
