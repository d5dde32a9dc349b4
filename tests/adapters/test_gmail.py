"""Tests for Gmail label handling."""

from __future__ import annotations

import pytest
from conftest import FakeImapServer

from mailsync.adapters.gmail import GmailAdapter, classify_labels, normalize_label
from mailsync.config import ImapConfig
from mailsync.models import Account, FolderType, Provider

pytestmark = pytest.mark.provider_gmail

ALL_MAIL = "[Gmail]/All Mail"


@pytest.fixture
def server() -> FakeImapServer:
    server = FakeImapServer.gmail()
    server.add_message(ALL_MAIL, uid=1, labels=["\\Inbox", "Work"], thread_id=1111)
    server.add_message(ALL_MAIL, uid=2, labels=["\\Sent"])
    server.add_message(ALL_MAIL, uid=3)
    server.add_message(ALL_MAIL, uid=4, labels=["\\Inbox"])
    server.add_message("[Gmail]/Trash", uid=1)
    return server


@pytest.fixture
def adapter(server: FakeImapServer) -> GmailAdapter:
    return GmailAdapter(
        imap=ImapConfig(network_retry_base_delay=0.0),
        client_factory=server.client_factory,
        sleep=lambda _delay: None,
    )


@pytest.fixture
def account() -> Account:
    return Account.from_preset(
        id="gmail-1",
        email="user@gmail.com",
        provider=Provider.GMAIL,
        password="app-password",
        is_verified=True,
    )


# ============================================================================
# Label classification
# ============================================================================


def test_label_priority():
    assert classify_labels(["\\Inbox", "\\Sent"]) == FolderType.INBOX
    assert classify_labels(["\\Sent", "\\Draft"]) == FolderType.SENT
    assert classify_labels(["\\Draft"]) == FolderType.DRAFTS
    assert classify_labels(["\\Trash"]) == FolderType.TRASH
    assert classify_labels(["\\Spam"]) == FolderType.SPAM
    assert classify_labels(["Receipts"]) == FolderType.ARCHIVE
    assert classify_labels([]) == FolderType.ARCHIVE


def test_label_normalization():
    assert normalize_label(' "\\Inbox" ') == "\\inbox"
    assert classify_labels(['"\\INBOX"']) == FolderType.INBOX


def test_mailbox_path_fallback():
    assert classify_labels(["Work"], mailbox_path="INBOX") == FolderType.INBOX
    assert classify_labels(["Work"], mailbox_path=ALL_MAIL) == FolderType.ARCHIVE


# ============================================================================
# Views over All Mail
# ============================================================================


def test_inbox_view_counts_labelled_messages(adapter, account):
    status = adapter.get_folder_status(account, FolderType.INBOX)

    assert status.mailbox == ALL_MAIL
    assert status.exists == 2
    assert status.uidnext == 5


def test_inbox_view_fetches_only_inbox_messages(adapter, account, server):
    messages = adapter.fetch_latest_messages_for_account(account, FolderType.INBOX, 10)

    assert [m.uid for m in messages] == [4, 1]
    assert all(m.folder == FolderType.INBOX for m in messages)
    assert all(m.source_folder == FolderType.ARCHIVE for m in messages)
    assert messages[1].thread_id == "1111"
    assert "Work" in messages[1].labels
    assert any("X-GM-RAW" in args for name, args in server.calls if name == "search")


def test_all_mail_messages_are_filed_by_label(adapter, account):
    messages = adapter.fetch_latest_messages_for_account(account, FolderType.ARCHIVE, 10)

    assert {m.uid: m.folder for m in messages} == {
        4: FolderType.INBOX,
        3: FolderType.ARCHIVE,
        2: FolderType.SENT,
        1: FolderType.INBOX,
    }
    assert all(m.source_folder == FolderType.ARCHIVE for m in messages)


def test_trash_keeps_its_own_folder(adapter, account):
    messages = adapter.fetch_latest_messages_for_account(account, FolderType.TRASH, 10)

    assert [(m.uid, m.folder) for m in messages] == [(1, FolderType.TRASH)]


def test_crawlers_use_all_mail(adapter):
    assert adapter.forward_folders() == [FolderType.ARCHIVE]
    assert adapter.backfill_folder() == FolderType.ARCHIVE
    assert adapter.search_criteria(FolderType.SENT) == ["X-GM-RAW", "in:sent"]
    assert adapter.search_criteria(FolderType.TRASH) == ["ALL"]
