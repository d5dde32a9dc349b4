"""Tests for the sync log."""

from __future__ import annotations

from datetime import timedelta

from mailsync.models import utcnow
from mailsync.store.sync_log import SyncLog, SyncLogEntry


def test_entries_are_newest_first(sync_log: SyncLog):
    now = utcnow()
    sync_log.append(SyncLogEntry("acct", "seed_started", created_at=now - timedelta(minutes=2)))
    sync_log.append(SyncLogEntry("acct", "seed_completed", {"count": 2}, created_at=now))

    entries = sync_log.entries("acct")

    assert [entry.action for entry in entries] == ["seed_completed", "seed_started"]
    assert entries[0].details == {"count": 2}


def test_entries_filter_by_account_and_action(sync_log: SyncLog):
    sync_log.record("one", "forward_sync", {"fetched": 3})
    sync_log.record("one", "backfill")
    sync_log.record("two", "forward_sync")

    assert len(sync_log.entries()) == 3
    assert [e.account_id for e in sync_log.entries(action="forward_sync")] == ["two", "one"]
    assert len(sync_log.entries("one", action="backfill")) == 1
    assert len(sync_log.entries(limit=1)) == 1


def test_payload_omits_empty_details():
    entry = SyncLogEntry("acct", "account_reset")
    assert "details" not in entry.to_payload()
    assert SyncLogEntry("acct", "uid_reset", {"cursor": 9}).to_payload()["details"] == {"cursor": 9}


def test_prune_and_delete(sync_log: SyncLog):
    now = utcnow()
    sync_log.append(SyncLogEntry("acct", "old", created_at=now - timedelta(days=60)))
    sync_log.record("acct", "recent")
    sync_log.record("other", "recent")

    assert sync_log.prune(now - timedelta(days=30)) == 1
    assert sync_log.delete_for_account("acct") == 1
    assert [entry.account_id for entry in sync_log.entries()] == ["other"]
