"""Shared fixtures and an in-memory IMAP server for the engine tests."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from mailsync.adapters.parser import ParsedMessage
from mailsync.config import ImapConfig, MailSyncConfig, StorageConfig, SyncConfig
from mailsync.models import Account, AuthType, FolderType, Provider
from mailsync.runtime import build_engine
from mailsync.store.accounts import AccountStore
from mailsync.store.messages import MessageStore
from mailsync.store.sync_log import SyncLog

GENERIC_MAILBOXES = ("INBOX", "Sent", "Drafts", "Trash", "Spam", "Archive")
GMAIL_MAILBOXES = (
    "INBOX",
    "[Gmail]/All Mail",
    "[Gmail]/Sent Mail",
    "[Gmail]/Drafts",
    "[Gmail]/Trash",
    "[Gmail]/Spam",
)
GMAIL_VIEWS = {"in:inbox": "\\inbox", "in:sent": "\\sent", "in:drafts": "\\draft"}


# ============================================================================
# Message builders
# ============================================================================


def make_raw_message(
    *,
    subject: Optional[str] = "Hello",
    sender: Optional[str] = "Alice <alice@example.com>",
    to: str = "bob@example.com",
    message_id: Optional[str] = None,
    date: Optional[datetime] = None,
    body: Optional[str] = "Hello Bob, see you tomorrow.",
    html: Optional[str] = None,
    attachment: Optional[Tuple[str, bytes]] = None,
) -> bytes:
    """Build an RFC822 payload."""
    msg = EmailMessage()
    if sender is not None:
        msg["From"] = sender
    msg["To"] = to
    if subject is not None:
        msg["Subject"] = subject
    if message_id:
        msg["Message-ID"] = message_id
    msg["Date"] = format_datetime(date or datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc))
    if body is not None:
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
    elif html:
        msg.set_content(html, subtype="html")
    if attachment:
        filename, data = attachment
        msg.add_attachment(data, maintype="application", subtype="pdf", filename=filename)
    return msg.as_bytes()


def make_parsed(
    uid: int,
    folder: FolderType = FolderType.INBOX,
    *,
    source_folder: Optional[FolderType] = None,
    message_id: Optional[str] = None,
    received_at: Optional[datetime] = None,
    body_text: Optional[str] = "body",
    is_read: bool = False,
) -> ParsedMessage:
    return ParsedMessage(
        uid=uid,
        folder=folder,
        source_folder=source_folder or folder,
        message_id=message_id,
        from_address={"address": "alice@example.com", "display_name": "Alice"},
        to_addresses=[{"address": "bob@example.com"}],
        subject=f"Message {uid}",
        preview="body",
        body_text=body_text,
        is_read=is_read,
        received_at=received_at or datetime(2024, 1, 15, tzinfo=timezone.utc),
    )


# ============================================================================
# Fake IMAP server
# ============================================================================


@dataclass
class FakeMessage:
    uid: int
    body: bytes
    flags: Tuple[bytes, ...] = ()
    labels: Tuple[bytes, ...] = ()
    thread_id: Optional[int] = None
    internal_date: datetime = field(default_factory=lambda: datetime(2024, 1, 15, tzinfo=timezone.utc))


class FakeMailbox:
    def __init__(self, name: str, uidvalidity: int = 1) -> None:
        self.name = name
        self.uidvalidity = uidvalidity
        self.messages: Dict[int, FakeMessage] = {}
        self.uidnext = 1

    def add(self, message: FakeMessage) -> None:
        self.messages[message.uid] = message
        self.uidnext = max(self.uidnext, message.uid + 1)

    def expunge(self, uid: int) -> None:
        self.messages.pop(uid, None)


def _slug(mailbox: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "-", mailbox).strip("-").lower()


def _match_uid_range(all_uids: Sequence[int], spec: str) -> List[int]:
    low_text, _, high_text = spec.partition(":")
    low = int(low_text)
    if not high_text:
        return [uid for uid in all_uids if uid == low]
    if high_text == "*":
        matched = [uid for uid in all_uids if uid >= low]
        # "n:*" above the highest UID still matches the highest UID
        if not matched and all_uids:
            matched = [max(all_uids)]
        return matched
    high = int(high_text)
    return [uid for uid in all_uids if low <= uid <= high]


class FakeImapServer:
    """Mailboxes shared by every client the factory hands out."""

    def __init__(self, mailboxes: Iterable[str] = GENERIC_MAILBOXES) -> None:
        self.mailboxes: Dict[str, FakeMailbox] = {name: FakeMailbox(name) for name in mailboxes}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.reject_login = False
        self.clients: List["FakeImapClient"] = []

    @classmethod
    def gmail(cls) -> "FakeImapServer":
        return cls(GMAIL_MAILBOXES)

    def add_message(
        self,
        mailbox: str = "INBOX",
        *,
        uid: Optional[int] = None,
        flags: Sequence[str] = (),
        labels: Sequence[str] = (),
        thread_id: Optional[int] = None,
        **builder: Any,
    ) -> int:
        box = self.mailboxes[mailbox]
        uid = uid or box.uidnext
        builder.setdefault("message_id", f"<{_slug(mailbox)}-{uid}@example.com>")
        builder.setdefault("subject", f"Message {uid}")
        box.add(
            FakeMessage(
                uid=uid,
                body=make_raw_message(**builder),
                flags=tuple(flag.encode() for flag in flags),
                labels=tuple(label.encode() for label in labels),
                thread_id=thread_id,
            )
        )
        return uid

    def add_messages(self, mailbox: str, uids: Iterable[int], **kwargs: Any) -> List[int]:
        return [self.add_message(mailbox, uid=uid, **kwargs) for uid in uids]

    def fail_next(self, operation: str, exc: BaseException) -> None:
        self.failures.setdefault(operation, []).append(exc)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def fetched_uids(self) -> List[int]:
        return [uid for name, args in self.calls if name == "fetch" for uid in args]

    def client_factory(self, **kwargs: Any) -> "FakeImapClient":
        client = FakeImapClient(self, **kwargs)
        self.clients.append(client)
        return client

    def search(self, box: FakeMailbox, criteria: Any) -> List[int]:
        items = [criteria] if isinstance(criteria, (str, bytes)) else list(criteria)
        all_uids = sorted(box.messages)
        uids = list(all_uids)
        index = 0
        while index < len(items):
            key = str(items[index]).upper()
            if key == "ALL":
                index += 1
            elif key == "X-GM-RAW":
                label = GMAIL_VIEWS[str(items[index + 1]).lower()]
                uids = [
                    uid
                    for uid in uids
                    if label in {value.decode().lower() for value in box.messages[uid].labels}
                ]
                index += 2
            elif key == "UID":
                matched = set(_match_uid_range(all_uids, str(items[index + 1])))
                uids = [uid for uid in uids if uid in matched]
                index += 2
            else:
                raise IMAPClient.Error(f"Unsupported search key: {items[index]}")
        return uids


class FakeImapClient:
    """Implements the subset of ``IMAPClient`` the adapters call."""

    def __init__(self, server: FakeImapServer, **kwargs: Any) -> None:
        self.server = server
        self.kwargs = kwargs
        self.selected: Optional[FakeMailbox] = None
        self.logged_in_as: Optional[str] = None
        self.credential: Optional[str] = None
        self.tls_started = False
        self.logged_out = False

    def _record(self, operation: str, *args: Any) -> None:
        self.server.calls.append((operation, args))
        pending = self.server.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def starttls(self, ssl_context: Any = None) -> None:
        self._record("starttls")
        self.tls_started = True

    def login(self, username: str, password: str) -> None:
        self._record("login", username)
        if self.server.reject_login:
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        self.logged_in_as = username
        self.credential = password

    def oauth2_login(self, user: str, access_token: str, mech: str = "XOAUTH2", vendor: Any = None) -> None:
        self._record("oauth2_login", user)
        if self.server.reject_login:
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        self.logged_in_as = user
        self.credential = access_token

    def logout(self) -> None:
        self._record("logout")
        self.logged_out = True

    def list_folders(self, directory: str = "", pattern: str = "*") -> List[Tuple[Any, bytes, str]]:
        self._record("list_folders")
        return [((b"\\HasNoChildren",), b"/", name) for name in self.server.mailboxes]

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self._record("select_folder", folder)
        box = self.server.mailboxes.get(folder)
        if box is None:
            raise IMAPClient.Error(f"select failed: Mailbox does not exist: {folder}")
        self.selected = box
        return {
            b"EXISTS": len(box.messages),
            b"UIDNEXT": box.uidnext,
            b"UIDVALIDITY": box.uidvalidity,
            b"READ-ONLY": [b""],
        }

    def search(self, criteria: Any = "ALL", charset: Optional[str] = None) -> List[int]:
        self._record("search", *([criteria] if isinstance(criteria, str) else criteria))
        if self.selected is None:
            raise IMAPClient.Error("No mailbox selected")
        return self.server.search(self.selected, criteria)

    def fetch(self, messages: Sequence[int], data: Sequence[str], modifiers: Any = None) -> Dict[int, Dict[bytes, Any]]:
        self._record("fetch", *messages)
        if self.selected is None:
            raise IMAPClient.Error("No mailbox selected")
        with_labels = "X-GM-LABELS" in data
        response: Dict[int, Dict[bytes, Any]] = {}
        for uid in messages:
            message = self.selected.messages.get(int(uid))
            if message is None:
                continue
            entry: Dict[bytes, Any] = {
                b"SEQ": int(uid),
                b"BODY[]": message.body,
                b"FLAGS": message.flags,
                b"INTERNALDATE": message.internal_date,
                b"RFC822.SIZE": len(message.body),
            }
            if with_labels:
                entry[b"X-GM-LABELS"] = message.labels
                entry[b"X-GM-THRID"] = message.thread_id
            response[int(uid)] = entry
        return response


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config(tmp_path: Path) -> MailSyncConfig:
    """Small batches and no self-dispatch delays."""
    return MailSyncConfig(
        storage=StorageConfig(database_path=tmp_path / "mailsync.db", queue_path=tmp_path / "queue.db"),
        sync=SyncConfig(
            seed_count=2,
            chunk_size=3,
            forward_bootstrap_count=5,
            forward_batch_limit=10,
            backfill_batch_size=4,
            backfill_window=10,
            backfill_delay_seconds=0,
            backfill_start_delay_seconds=0,
            folder_chunk_delay_seconds=0,
        ),
        imap=ImapConfig(network_retry_base_delay=0.0),
    )


@pytest.fixture
def server() -> FakeImapServer:
    return FakeImapServer()


@pytest.fixture
def engine(config: MailSyncConfig, server: FakeImapServer):
    engine = build_engine(config, client_factory=server.client_factory, sleep=lambda _delay: None)
    yield engine
    engine.close()


@pytest.fixture
def add_account(engine):
    """Factory registering a verified password account."""

    def _add(account_id: str = "acct-1", *, provider: Provider = Provider.CUSTOM, **fields: Any) -> Account:
        values: Dict[str, Any] = {
            "email": f"{account_id}@example.com",
            "auth_type": AuthType.PASSWORD,
            "password": "app-password",
            "is_verified": True,
        }
        if provider == Provider.CUSTOM:
            values["imap_host"] = "imap.example.com"
        values.update(fields)
        return engine.accounts.add(Account.from_preset(id=account_id, provider=provider, **values))

    return _add


@pytest.fixture
def account_store(tmp_path: Path):
    store = AccountStore(tmp_path / "accounts.db")
    yield store
    store.close()


@pytest.fixture
def message_store(tmp_path: Path):
    store = MessageStore(tmp_path / "messages.db")
    yield store
    store.close()


@pytest.fixture
def sync_log(tmp_path: Path):
    log = SyncLog(tmp_path / "sync_log.db")
    yield log
    log.close()
