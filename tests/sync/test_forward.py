"""Tests for the forward crawler."""

from __future__ import annotations

import pytest
from conftest import FakeImapServer

from mailsync.adapters.parser import MessageParser
from mailsync.exceptions import AdapterError
from mailsync.models import FolderType, Provider


@pytest.fixture
def seeding(engine, add_account):
    add_account()
    engine.orchestrator.start_seed("acct-1")
    return engine


def test_first_run_bootstraps_from_newest_messages(seeding, server):
    server.add_messages("INBOX", [10, 12, 15])

    assert seeding.forward.run("acct-1") == 3

    account = seeding.accounts.get("acct-1")
    assert account.forward_uid_cursor == 15
    assert account.last_forward_sync_at is not None
    assert seeding.messages.count("acct-1") == 3
    entry = seeding.sync_log.entries("acct-1", action="forward_fetch")[0]
    assert entry.details["forward_cursor"] == 15


def test_no_fetch_when_nothing_arrived(seeding, server):
    server.add_messages("INBOX", [10, 12, 15])
    seeding.forward.run("acct-1")
    fetches = server.count("fetch")

    assert seeding.forward.run("acct-1") == 0
    assert server.count("fetch") == fetches
    assert seeding.accounts.get("acct-1").forward_uid_cursor == 15


def test_new_messages_above_cursor(seeding, server):
    server.add_messages("INBOX", [10, 12, 15])
    seeding.forward.run("acct-1")
    server.add_message("INBOX", uid=16)

    assert seeding.forward.run("acct-1") == 1
    assert seeding.accounts.get("acct-1").forward_uid_cursor == 16
    assert seeding.messages.get("acct-1", FolderType.INBOX, 16) is not None


def test_batch_limit_caps_a_run(seeding, server):
    server.add_messages("INBOX", [10, 12, 15])
    seeding.forward.run("acct-1")
    server.add_messages("INBOX", range(16, 46))

    assert seeding.forward.run("acct-1") == 10
    assert seeding.accounts.get("acct-1").forward_uid_cursor == 25
    assert seeding.forward.run("acct-1") == 10
    assert seeding.accounts.get("acct-1").forward_uid_cursor == 35


def test_uid_reset_clears_cursors_and_bootstraps(seeding, server):
    server.add_messages("INBOX", [10, 12, 15])
    seeding.forward.run("acct-1")
    seeding.accounts.advance_forward_cursor("acct-1", 100)
    seeding.accounts.lower_backfill_cursor("acct-1", 50)

    assert seeding.forward.run("acct-1") == 0

    account = seeding.accounts.get("acct-1")
    assert account.forward_uid_cursor == 15
    assert account.backfill_uid_cursor is None
    entry = seeding.sync_log.entries("acct-1", action="uid_reset")[0]
    assert entry.details == {"folder": "inbox", "forward_cursor": 100, "uidnext": 16}


def test_empty_mailbox_starts_at_uidnext(seeding, server):
    server.add_messages("INBOX", [1, 2, 3])
    for uid in (1, 2, 3):
        server.mailboxes["INBOX"].expunge(uid)

    assert seeding.forward.run("acct-1") == 0
    assert seeding.accounts.get("acct-1").forward_uid_cursor == 3


def test_never_used_mailbox_leaves_cursor_unset(seeding):
    assert seeding.forward.run("acct-1") == 0
    assert seeding.accounts.get("acct-1").forward_uid_cursor is None


def test_known_messages_are_not_fetched_again(seeding, server):
    server.add_messages("INBOX", [10, 12, 15])
    seeding.seed.run("acct-1")
    fetched_by_seed = server.fetched_uids()

    seeding.forward.run("acct-1")

    assert fetched_by_seed == [15, 12]
    assert server.fetched_uids()[len(fetched_by_seed):] == [10]
    assert seeding.messages.count("acct-1") == 3


def test_ineligible_account_is_skipped(engine, server, add_account):
    add_account()

    assert engine.forward.run("acct-1") == 0
    assert engine.forward.run("unknown") == 0
    assert server.clients == []


def test_login_failure_records_sync_error(seeding, server):
    server.reject_login = True

    with pytest.raises(AdapterError):
        seeding.forward.run("acct-1")
    assert "login rejected" in seeding.accounts.get("acct-1").sync_error


def test_gmail_forward_files_messages_by_label(engine, server, add_account):
    server.mailboxes.update(FakeImapServer.gmail().mailboxes)
    server.add_message("[Gmail]/All Mail", uid=1, labels=["\\Inbox"])
    server.add_message("[Gmail]/All Mail", uid=2, labels=["\\Sent"])
    add_account("gmail-1", provider=Provider.GMAIL)
    engine.orchestrator.start_seed("gmail-1")

    assert engine.forward.run("gmail-1") == 2

    assert engine.messages.get("gmail-1", FolderType.INBOX, 1) is not None
    assert engine.messages.get("gmail-1", FolderType.SENT, 2) is not None
    assert engine.accounts.get("gmail-1").forward_uid_cursor == 2


def test_malformed_message_does_not_stall_the_cursor(seeding, server, monkeypatch):
    server.add_messages("INBOX", [10, 12, 15])
    seeding.forward.run("acct-1")
    server.add_messages("INBOX", [16, 17])
    parse = MessageParser.parse

    def broken_header(self, raw, **kwargs):
        if raw.uid == 16:
            raise IndexError("list index out of range")
        return parse(self, raw, **kwargs)

    monkeypatch.setattr(MessageParser, "parse", broken_header)

    assert seeding.forward.run("acct-1") == 1

    assert seeding.accounts.get("acct-1").forward_uid_cursor == 17
    assert seeding.messages.get("acct-1", FolderType.INBOX, 16) is None
    assert seeding.messages.get("acct-1", FolderType.INBOX, 17) is not None
    assert seeding.forward.run("acct-1") == 0


def test_gmail_forward_skips_messages_seeded_from_label_views(engine, server, add_account):
    server.mailboxes.update(FakeImapServer.gmail().mailboxes)
    server.add_message("[Gmail]/All Mail", uid=1, labels=["\\Inbox"])
    server.add_message("[Gmail]/All Mail", uid=2, labels=["\\Sent"])
    server.add_message("[Gmail]/All Mail", uid=3)
    add_account("gmail-1", provider=Provider.GMAIL)
    engine.orchestrator.start_seed("gmail-1")
    engine.seed.run("gmail-1")
    fetched_by_seed = server.fetched_uids()

    engine.forward.run("gmail-1")

    assert sorted(fetched_by_seed) == [1, 2]
    assert server.fetched_uids()[len(fetched_by_seed):] == [3]
    assert engine.messages.counts_by_folder("gmail-1") == {
        FolderType.INBOX: 1,
        FolderType.SENT: 1,
        FolderType.ARCHIVE: 1,
    }
