"""Provider adapter contract and the IMAP session it hands to the crawlers.

An adapter translates between the engine's folder categories and one provider
family's mailboxes. Crawlers open a :class:`MailboxSession` through
:meth:`ProviderAdapter.session`, which refreshes OAuth tokens first, then
connects once and serves every folder of the run from that connection.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, Iterator, List, Optional, Sequence, Set

from imapclient import IMAPClient

from ..config import ImapConfig, SyncConfig
from ..exceptions import FolderNotFoundError
from ..models import Account, FolderType, Provider
from .connection import ClientFactory, ImapConnection, RetryStrategy, with_backoff
from .folders import folder_candidates, pick_mailbox
from .parser import MessageParser, ParsedMessage, RawMessage, normalize_flags

if TYPE_CHECKING:
    from ..auth.tokens import TokenLifecycle

logger = logging.getLogger(__name__)

FETCH_CHUNK = 50
ALL = ["ALL"]


@dataclass(frozen=True)
class FolderStatus:
    """SELECT result for one folder view."""

    folder: FolderType
    mailbox: str
    exists: int
    uidnext: int
    uidvalidity: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.exists == 0


@dataclass(frozen=True)
class FolderPage:
    """One offset page of a folder for the full-sync walker."""

    folder: FolderType
    total: int
    uids: List[int]
    messages: List[ParsedMessage]


def _decode_name(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class MailboxSession:
    """Folder operations over one authenticated connection."""

    def __init__(self, adapter: "ProviderAdapter", account: Account, client: Any) -> None:
        self.adapter = adapter
        self.account = account
        self.client = client
        self._mailboxes: Optional[List[str]] = None
        self._resolved: Dict[FolderType, Optional[str]] = {}
        self._selected: Optional[str] = None

    # ------------------------------------------------------------------
    # Mailbox resolution
    # ------------------------------------------------------------------

    def list_mailboxes(self) -> List[str]:
        if self._mailboxes is None:
            listing = self.client.list_folders()
            self._mailboxes = [_decode_name(entry[2]) for entry in listing]
        return self._mailboxes

    def resolve_mailbox(self, folder: FolderType) -> Optional[str]:
        """Remote mailbox backing ``folder``, or None when the server has none."""
        if folder not in self._resolved:
            mailbox_type = self.adapter.mailbox_for(folder)
            mailbox = pick_mailbox(self.adapter.folder_candidates(mailbox_type), self.list_mailboxes())
            if mailbox is None:
                logger.warning(
                    "Folder not found on server",
                    extra={
                        "account_id": self.account.id,
                        "folder": folder.value,
                        "candidates": self.adapter.folder_candidates(mailbox_type),
                    },
                )
            self._resolved[folder] = mailbox
        return self._resolved[folder]

    def _require_mailbox(self, folder: FolderType) -> str:
        mailbox = self.resolve_mailbox(folder)
        if mailbox is None:
            raise FolderNotFoundError(f"No mailbox for folder {folder.value} on account {self.account.id}")
        return mailbox

    # ------------------------------------------------------------------
    # Status and UID listing
    # ------------------------------------------------------------------

    def select(self, folder: FolderType) -> FolderStatus:
        """Select the folder read-only and report its size and ``uidnext``.

        Raises:
            FolderNotFoundError: If no candidate mailbox exists
        """
        mailbox = self._require_mailbox(folder)
        info = self.client.select_folder(mailbox, readonly=True)
        self._selected = mailbox
        exists = int(info.get(b"EXISTS", 0) or 0)
        uidvalidity = info.get(b"UIDVALIDITY")
        uidnext = info.get(b"UIDNEXT")

        criteria = self.adapter.search_criteria(folder)
        if criteria != ALL:
            exists = len(self._search(criteria))
        if uidnext is None:
            uids = self._search(ALL)
            uidnext = max(uids) + 1 if uids else 1
        return FolderStatus(
            folder=folder,
            mailbox=mailbox,
            exists=exists,
            uidnext=int(uidnext),
            uidvalidity=int(uidvalidity) if uidvalidity is not None else None,
        )

    def _ensure_selected(self, folder: FolderType) -> None:
        if self._selected != self._require_mailbox(folder):
            self.select(folder)

    def _search(self, criteria: Sequence[Any]) -> List[int]:
        result = self.client.search(list(criteria))
        return [int(uid) for uid in result or []]

    def _search_range(self, folder: FolderType, low: int, high: Optional[int] = None) -> List[int]:
        self._ensure_selected(folder)
        upper = "*" if high is None else str(high)
        criteria = [*self.adapter.view_criteria(folder), "UID", f"{max(1, low)}:{upper}"]
        uids = self._search(criteria)
        # "n:*" always matches the highest UID, even when it is below n
        return sorted(uid for uid in uids if uid >= low and (high is None or uid <= high))

    def all_uids(self, folder: FolderType) -> List[int]:
        self._ensure_selected(folder)
        return sorted(self._search(self.adapter.search_criteria(folder)))

    def fetch_latest_uids(self, folder: FolderType, count: int) -> List[int]:
        """Highest ``count`` UIDs, newest first.

        The search window starts at twice ``count`` below ``uidnext`` and
        doubles while deleted UIDs leave it short.
        """
        status = self.select(folder)
        if status.is_empty or count <= 0:
            return []
        window = max(1, 2 * count)
        while True:
            start = max(1, status.uidnext - window)
            uids = self._search_range(folder, start)
            if len(uids) >= count or start == 1:
                return sorted(uids, reverse=True)[:count]
            window *= 2

    def fetch_uids_after(self, folder: FolderType, cursor: int) -> List[int]:
        """UIDs strictly above ``cursor``, ascending."""
        return self._search_range(folder, cursor + 1)

    def fetch_uid_range(self, folder: FolderType, low: int, high: int) -> List[int]:
        if high < low:
            return []
        return self._search_range(folder, low, high)

    # ------------------------------------------------------------------
    # Message fetch
    # ------------------------------------------------------------------

    def fetch_raw(self, folder: FolderType, uids: Sequence[int]) -> List[RawMessage]:
        """Download full messages without setting ``\\Seen``, in the order of ``uids``."""
        if not uids:
            return []
        mailbox = self._require_mailbox(folder)
        self._ensure_selected(folder)
        items = ["BODY.PEEK[]", "FLAGS", "INTERNALDATE", "RFC822.SIZE", *self.adapter.extra_fetch_items()]
        responses: Dict[int, Dict[bytes, Any]] = {}
        uid_list = [int(uid) for uid in uids]
        for start in range(0, len(uid_list), FETCH_CHUNK):
            responses.update(self.client.fetch(uid_list[start : start + FETCH_CHUNK], items))

        messages = []
        for uid in uid_list:
            data = responses.get(uid)
            if not data:
                logger.debug(
                    "UID vanished before fetch",
                    extra={"account_id": self.account.id, "folder": folder.value, "uid": uid},
                )
                continue
            body = data.get(b"BODY[]") or data.get(b"RFC822") or b""
            thread_id = data.get(b"X-GM-THRID")
            messages.append(
                RawMessage(
                    uid=uid,
                    body=body,
                    source_folder=self.adapter.mailbox_for(folder),
                    mailbox=mailbox,
                    flags=normalize_flags(data.get(b"FLAGS")),
                    labels=normalize_flags(data.get(b"X-GM-LABELS")),
                    thread_id=str(thread_id) if thread_id is not None else None,
                    internal_date=data.get(b"INTERNALDATE"),
                    size_bytes=int(data.get(b"RFC822.SIZE") or len(body)),
                )
            )
        return messages

    def fetch_parsed(self, folder: FolderType, uids: Sequence[int]) -> List[ParsedMessage]:
        return self.adapter.parse_many(self.fetch_raw(folder, uids))

    def fetch_latest_messages(self, folder: FolderType, count: int) -> List[ParsedMessage]:
        return self.fetch_parsed(folder, self.fetch_latest_uids(folder, count))


class ProviderAdapter:
    """Generic IMAP adapter; provider variants override the hooks they need.

    Args:
        imap: Connection and retry settings
        sync: Parsing and batch settings
        tokens: Token lifecycle used before every connection of an OAuth account
        client_factory: IMAP client constructor, swapped in tests
        sleep: Delay function used between transport retries
    """

    provider: ClassVar[Provider] = Provider.CUSTOM
    oauth_capable: ClassVar[bool] = False

    def __init__(
        self,
        *,
        imap: Optional[ImapConfig] = None,
        sync: Optional[SyncConfig] = None,
        tokens: Optional["TokenLifecycle"] = None,
        client_factory: ClientFactory = IMAPClient,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.imap = imap or ImapConfig()
        self.sync = sync or SyncConfig()
        self.tokens = tokens
        self.client_factory = client_factory
        self.parser = MessageParser(preview_length=self.sync.preview_length)
        self.retry_strategy = RetryStrategy(
            max_retries=self.imap.network_retries,
            base_delay=self.imap.network_retry_base_delay,
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Provider facts
    # ------------------------------------------------------------------

    def folder_candidates(self, folder: FolderType) -> List[str]:
        return folder_candidates(self.provider, folder)

    def get_folder_name(self, folder: FolderType) -> str:
        return self.folder_candidates(self.mailbox_for(folder))[0]

    def supports_oauth(self) -> bool:
        return self.oauth_capable

    def get_max_parallel_folders(self) -> int:
        return self.imap.parallel_folders_for(self.provider.value)

    def mailbox_for(self, folder: FolderType) -> FolderType:
        """Folder whose remote mailbox backs the ``folder`` view."""
        return folder

    def view_criteria(self, folder: FolderType) -> List[Any]:
        """Extra SEARCH keys narrowing the mailbox to the ``folder`` view."""
        return []

    def search_criteria(self, folder: FolderType) -> List[Any]:
        return self.view_criteria(folder) or list(ALL)

    def extra_fetch_items(self) -> List[str]:
        return []

    def forward_folders(self) -> List[FolderType]:
        """Folders polled by the forward crawler; they share one UID space."""
        return [FolderType.INBOX]

    def backfill_folder(self) -> FolderType:
        return FolderType.INBOX

    # ------------------------------------------------------------------
    # Tokens and connections
    # ------------------------------------------------------------------

    def ensure_token(self, account: Account) -> Account:
        """Account carrying a usable access token; refreshes when needed."""
        if not account.is_oauth or self.tokens is None:
            return account
        return self.tokens.refresh_if_needed(account)

    def refresh_token_if_needed(self, account: Account) -> bool:
        """True when a refresh was performed."""
        if not account.is_oauth or self.tokens is None:
            return False
        _account, refreshed = self.tokens.ensure_fresh(account)
        return refreshed

    def with_backoff(self, operation: Callable[[], Any], *, description: str = "imap operation") -> Any:
        return with_backoff(
            operation,
            strategy=self.retry_strategy,
            description=description,
            sleep=self._sleep,
        )

    @contextmanager
    def session(self, account: Account) -> Iterator[MailboxSession]:
        """Authenticated session; token refresh failures propagate before connecting."""
        account = self.ensure_token(account)
        connection = ImapConnection(
            account=account,
            connection_timeout=self.imap.connection_timeout_seconds,
            client_factory=self.client_factory,
        )
        with connection.connect() as client:
            yield MailboxSession(self, account, client)

    def run(self, account: Account, work: Callable[[MailboxSession], Any], description: str) -> Any:
        """Run ``work`` in a fresh session, retrying transport failures.

        This is the only retry level: a failed attempt drops its connection
        and the next one reconnects and repeats ``work`` from the start.
        Tokens refreshed by one attempt carry over to the next.
        """
        current = account

        def attempt() -> Any:
            nonlocal current
            current = self.ensure_token(current)
            with self.session(current) as session:
                return work(session)

        return self.with_backoff(attempt, description=description)

    # ------------------------------------------------------------------
    # Folder operations
    # ------------------------------------------------------------------

    def get_folder_status(self, account: Account, folder: FolderType) -> FolderStatus:
        return self.run(account, lambda s: s.select(folder), "folder_status")

    def fetch_latest_uids(self, account: Account, folder: FolderType, count: int) -> List[int]:
        return self.run(
            account, lambda s: s.fetch_latest_uids(folder, count), "fetch_latest_uids"
        )

    def fetch_page(
        self,
        account: Account,
        folder: FolderType,
        offset: int,
        limit: int,
        *,
        known: Optional[Callable[[List[int]], Set[int]]] = None,
    ) -> FolderPage:
        """One page of the folder, newest first.

        Offsets count from the newest message, so the seed phase's newest
        messages are the first offsets and arrivals only shift pages onto
        messages already stored. UIDs for which ``known`` reports a stored
        copy are listed in the page but not downloaded.
        """

        def work(session: MailboxSession) -> FolderPage:
            status = session.select(folder)
            if status.is_empty:
                return FolderPage(folder=folder, total=0, uids=[], messages=[])
            all_uids = sorted(session.all_uids(folder), reverse=True)
            page = all_uids[offset : offset + limit]
            skip = known(page) if known and page else set()
            messages = session.fetch_parsed(folder, [uid for uid in page if uid not in skip])
            return FolderPage(folder=folder, total=len(all_uids), uids=page, messages=messages)

        return self.run(account, work, "fetch_page")

    def fetch_messages(
        self, account: Account, folder: FolderType, offset: int, limit: int
    ) -> List[ParsedMessage]:
        return self.fetch_page(account, folder, offset, limit).messages

    def fetch_latest_messages_for_account(
        self, account: Account, folder: FolderType, count: int
    ) -> List[ParsedMessage]:
        """Newest ``count`` messages of ``folder`` fetched in one range request."""
        return self.run(account, lambda s: s.fetch_latest_messages(folder, count), "fetch_latest_messages")

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def classify_folder(self, raw: RawMessage) -> FolderType:
        return raw.source_folder

    def parse_message(self, raw: RawMessage, skip_attachment_content: Optional[bool] = None) -> ParsedMessage:
        if skip_attachment_content is None:
            skip_attachment_content = self.sync.skip_attachment_content
        return self.parser.parse(
            raw,
            folder=self.classify_folder(raw),
            skip_attachment_content=skip_attachment_content,
        )

    def parse_many(self, raws: Sequence[RawMessage]) -> List[ParsedMessage]:
        """Parse a batch; messages that fail to parse are logged and dropped.

        A malformed header can surface as any exception from the email
        package, so one bad message never aborts the batch it arrived in.
        """
        parsed = []
        for raw in raws:
            try:
                parsed.append(self.parse_message(raw))
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Skipping unparseable message",
                    extra={"folder": raw.source_folder.value, "uid": raw.uid, "error": str(exc)},
                )
        return parsed


__all__ = ["FETCH_CHUNK", "FolderPage", "FolderStatus", "MailboxSession", "ProviderAdapter"]
