"""Tests for the full-sync folder walker."""

from __future__ import annotations

import pytest

from mailsync.exceptions import AdapterError
from mailsync.jobs.models import Continuation, JobType
from mailsync.models import FolderProgress, FolderType, SyncStatus


@pytest.fixture
def syncing(engine, server, add_account):
    """Account seeded with INBOX 6..7 and its single sent message."""
    server.add_messages("INBOX", range(1, 8))
    server.add_message("Sent", uid=1)
    add_account()
    engine.orchestrator.start_seed("acct-1")
    engine.seed.run("acct-1")
    return engine


def _progress(engine, folder: FolderType) -> FolderProgress:
    return engine.accounts.get("acct-1").sync_cursor.progress_for(folder)


def test_walker_resumes_behind_seeded_messages(syncing, server):
    seeded = list(server.fetched_uids())

    continuation = syncing.walker.run("acct-1", FolderType.INBOX)

    assert server.fetched_uids()[len(seeded):] == [5, 4, 3]
    assert _progress(syncing, FolderType.INBOX).synced == 5
    assert isinstance(continuation, Continuation)
    assert continuation.job_type == JobType.FOLDER_SYNC
    assert continuation.payload == {"account_id": "acct-1", "folder": "inbox"}


def test_walker_finishes_folder(syncing):
    syncing.walker.run("acct-1", FolderType.INBOX)

    assert syncing.walker.run("acct-1", FolderType.INBOX) is None

    progress = _progress(syncing, FolderType.INBOX)
    assert progress.is_done
    assert progress.priority
    assert syncing.messages.counts_by_folder("acct-1")[FolderType.INBOX] == 7
    chunks = syncing.sync_log.entries("acct-1", action="chunk_completed")
    assert [entry.details["synced"] for entry in chunks] == [7, 5]


def test_empty_folder_is_done_in_one_chunk(syncing):
    assert syncing.walker.run("acct-1", FolderType.ARCHIVE) is None
    assert _progress(syncing, FolderType.ARCHIVE) == FolderProgress(synced=0, total=0)


def test_missing_folder_is_recorded_as_empty(syncing, server):
    del server.mailboxes["Spam"]

    assert syncing.walker.run("acct-1", FolderType.SPAM) is None
    assert _progress(syncing, FolderType.SPAM).is_done


def test_done_folder_is_not_fetched_again(syncing, server):
    fetches = server.count("fetch")

    assert syncing.walker.run("acct-1", FolderType.SENT) is None
    assert server.count("fetch") == fetches


def test_walk_and_backfill_complete_the_account(syncing):
    while syncing.walker.run("acct-1", FolderType.INBOX) is not None:
        pass
    syncing.walker.run("acct-1", FolderType.ARCHIVE)
    syncing.walker.run("acct-1", FolderType.SPAM)
    assert syncing.accounts.get("acct-1").sync_status == SyncStatus.SYNCING

    assert syncing.backfill.run("acct-1") is None

    account = syncing.accounts.get("acct-1")
    assert account.sync_status == SyncStatus.COMPLETED
    assert account.initial_sync_completed_at is not None
    assert syncing.messages.count("acct-1") == 8
    assert syncing.sync_log.entries("acct-1", action="sync_completed")


def test_adapter_failure_fails_the_sync(syncing, server):
    server.reject_login = True

    with pytest.raises(AdapterError):
        syncing.walker.run("acct-1", FolderType.INBOX)
    account = syncing.accounts.get("acct-1")
    assert account.sync_status == SyncStatus.FAILED
    assert "login rejected" in account.sync_error


def test_walker_ignores_accounts_that_are_not_syncing(engine, server, add_account):
    add_account()

    assert engine.walker.run("acct-1", FolderType.INBOX) is None
    assert engine.walker.run("unknown", FolderType.INBOX) is None
    assert server.clients == []
