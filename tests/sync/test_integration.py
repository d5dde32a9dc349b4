"""End-to-end runs of the worker against the in-memory IMAP server."""

from __future__ import annotations

import pytest
from conftest import FakeImapServer

from mailsync.jobs.models import JobStatus
from mailsync.models import FolderType, Provider, SyncStatus

pytestmark = pytest.mark.integration


async def _drain(engine, limit: int = 100) -> int:
    """Run the worker until no job is due."""
    rounds = 0
    while await engine.worker.run_once():
        rounds += 1
        assert rounds < limit, "worker did not settle"
    return rounds


@pytest.mark.asyncio
async def test_new_account_syncs_to_completion(engine, server, add_account):
    server.add_messages("INBOX", range(1, 8))
    server.add_message("Sent", uid=1)
    server.add_messages("Archive", [1, 2])
    add_account()
    engine.orchestrator.start_seed("acct-1")

    await _drain(engine)

    account = engine.accounts.get("acct-1")
    assert account.sync_status == SyncStatus.COMPLETED
    assert account.backfill_complete
    assert account.forward_uid_cursor == 7
    assert engine.messages.counts_by_folder("acct-1") == {
        FolderType.INBOX: 7,
        FolderType.SENT: 1,
        FolderType.ARCHIVE: 2,
    }
    assert engine.queue.list_jobs(status=JobStatus.FAILED) == []
    report = engine.orchestrator.get_sync_progress("acct-1")
    assert report.phase == "complete"
    assert report.overall_percent == 100.0


@pytest.mark.asyncio
async def test_watchdog_and_incremental_sync_pick_up_new_mail(engine, server, add_account):
    server.add_messages("INBOX", [1, 2, 3])
    add_account()

    assert engine.maintenance.watchdog_tick()["started"] == 1
    await _drain(engine)
    server.add_messages("INBOX", [4, 5])
    engine.accounts.update_fields("acct-1", last_forward_sync_at=None)

    assert engine.maintenance.incremental_tick() == 1
    await _drain(engine)

    account = engine.accounts.get("acct-1")
    assert account.sync_status == SyncStatus.COMPLETED
    assert account.forward_uid_cursor == 5
    assert engine.messages.count("acct-1") == 5


@pytest.mark.asyncio
async def test_failed_login_fails_the_account(engine, server, add_account):
    server.reject_login = True
    add_account()
    engine.orchestrator.start_seed("acct-1")

    await _drain(engine)

    account = engine.accounts.get("acct-1")
    assert account.sync_status == SyncStatus.FAILED
    assert engine.sync_log.entries("acct-1", action="seed_failed")


@pytest.mark.asyncio
@pytest.mark.provider_gmail
async def test_gmail_account_syncs_from_all_mail(engine, server, add_account):
    server.mailboxes.update(FakeImapServer.gmail().mailboxes)
    all_mail = "[Gmail]/All Mail"
    server.add_message(all_mail, uid=1, labels=["\\Inbox"])
    server.add_message(all_mail, uid=2, labels=["\\Sent"])
    server.add_message(all_mail, uid=3)
    server.add_message("[Gmail]/Trash", uid=1)
    add_account("gmail-1", provider=Provider.GMAIL)
    engine.orchestrator.start_seed("gmail-1")

    await _drain(engine)

    assert engine.accounts.get("gmail-1").sync_status == SyncStatus.COMPLETED
    counts = engine.messages.counts_by_folder("gmail-1")
    assert counts[FolderType.INBOX] == 1
    assert counts[FolderType.SENT] == 1
    assert counts[FolderType.ARCHIVE] == 1
    assert counts[FolderType.TRASH] == 1
