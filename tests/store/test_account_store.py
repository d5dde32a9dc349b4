"""Tests for the account store."""

from __future__ import annotations

from datetime import timedelta

import pytest

from mailsync.exceptions import AccountNotFoundError, InvalidStateTransitionError, StateTransitionRaceError
from mailsync.models import Account, FolderType, SyncStatus, utcnow
from mailsync.store.accounts import AccountStore


def _new(account_id: str = "acct", **fields) -> Account:
    values = {
        "id": account_id,
        "email": f"{account_id}@example.com",
        "imap_host": "imap.example.com",
        "is_verified": True,
    }
    values.update(fields)
    return Account(**values)


# ============================================================================
# Whole-account operations
# ============================================================================


def test_add_and_get(account_store: AccountStore):
    stored = account_store.add(_new(disabled_folders=[FolderType.SPAM]))

    assert stored.version == 0
    assert stored.sync_status == SyncStatus.PENDING
    assert stored.disabled_folders == [FolderType.SPAM]
    assert list(stored.sync_cursor.folders) == FolderType.sync_order()
    assert account_store.get("acct") == stored


def test_add_duplicate_is_rejected(account_store: AccountStore):
    account_store.add(_new())
    with pytest.raises(ValueError, match="already exists"):
        account_store.add(_new())


def test_get_unknown_account(account_store: AccountStore):
    assert account_store.find("nope") is None
    with pytest.raises(AccountNotFoundError):
        account_store.get("nope")


def test_list_filters_by_status(account_store: AccountStore):
    account_store.add(_new("a"))
    account_store.add(_new("b"))
    account_store.transition_status("b", SyncStatus.SEEDING)

    assert [a.id for a in account_store.list()] == ["a", "b"]
    assert [a.id for a in account_store.list([SyncStatus.SEEDING])] == ["b"]
    assert account_store.list([]) == []


def test_delete(account_store: AccountStore):
    account_store.add(_new())
    account_store.delete("acct")
    assert account_store.find("acct") is None


# ============================================================================
# Field-level updates
# ============================================================================


def test_update_fields_bumps_version(account_store: AccountStore):
    account_store.add(_new())

    updated = account_store.update_fields("acct", sync_error="boom")

    assert updated.sync_error == "boom"
    assert updated.version == 1


def test_update_fields_with_stale_version_races(account_store: AccountStore):
    account_store.add(_new())
    account_store.update_fields("acct", sync_error="first")

    with pytest.raises(StateTransitionRaceError):
        account_store.update_fields("acct", expected_version=0, sync_error="second")
    assert account_store.get("acct").sync_error == "first"


def test_update_fields_rejects_unknown_and_managed_columns(account_store: AccountStore):
    account_store.add(_new())
    with pytest.raises(ValueError):
        account_store.update_fields("acct", colour="blue")
    with pytest.raises(ValueError):
        account_store.update_fields("acct", version=9)


def test_forward_cursor_only_moves_up(account_store: AccountStore):
    account_store.add(_new())

    assert account_store.advance_forward_cursor("acct", 10) == 10
    assert account_store.advance_forward_cursor("acct", 5) == 10
    assert account_store.advance_forward_cursor("acct", 12) == 12
    assert account_store.get("acct").forward_uid_cursor == 12


def test_backfill_cursor_only_moves_down(account_store: AccountStore):
    account_store.add(_new())

    assert account_store.lower_backfill_cursor("acct", 50) == 50
    assert account_store.lower_backfill_cursor("acct", 80) == 50
    assert account_store.lower_backfill_cursor("acct", 20) == 20
    assert account_store.get("acct").last_progress_at is not None


def test_cursor_writes_on_unknown_account(account_store: AccountStore):
    with pytest.raises(AccountNotFoundError):
        account_store.advance_forward_cursor("nope", 3)


def test_reset_uid_cursors(account_store: AccountStore):
    account_store.add(_new())
    account_store.advance_forward_cursor("acct", 40)
    account_store.lower_backfill_cursor("acct", 10)
    account_store.update_fields("acct", backfill_complete=True)

    reset = account_store.reset_uid_cursors("acct")

    assert reset.forward_uid_cursor is None
    assert reset.backfill_uid_cursor is None
    assert not reset.backfill_complete


def test_backfill_cursor_from_before_a_reset_is_discarded(account_store: AccountStore):
    account_store.add(_new())
    account_store.lower_backfill_cursor("acct", 50)
    epoch = account_store.get("acct").uid_epoch

    account_store.reset_uid_cursors("acct")

    assert account_store.lower_backfill_cursor("acct", 40, uid_epoch=epoch) is None
    account = account_store.get("acct")
    assert account.backfill_uid_cursor is None
    assert account.uid_epoch == epoch + 1
    assert account_store.lower_backfill_cursor("acct", 40, uid_epoch=account.uid_epoch) == 40


def test_reset_unknown_account(account_store: AccountStore):
    with pytest.raises(AccountNotFoundError):
        account_store.reset_uid_cursors("nope")


def test_folder_progress_keeps_other_folders(account_store: AccountStore):
    account_store.add(_new())
    account_store.update_folder_progress("acct", FolderType.INBOX, synced=3, total=10)

    cursor = account_store.update_folder_progress("acct", FolderType.SENT, synced=1, total=1)

    assert cursor.progress_for(FolderType.INBOX).synced == 3
    assert cursor.progress_for(FolderType.INBOX).priority
    assert cursor.progress_for(FolderType.SENT).is_done
    assert account_store.get("acct").sync_cursor == cursor


# ============================================================================
# Status transitions
# ============================================================================


def test_transition_writes_fields_in_the_same_update(account_store: AccountStore):
    account_store.add(_new())
    started = utcnow()

    account = account_store.transition_status(
        "acct", SyncStatus.SEEDING, from_status=SyncStatus.PENDING, sync_started_at=started
    )

    assert account.sync_status == SyncStatus.SEEDING
    assert account.sync_started_at == started


def test_transition_from_unexpected_status_races(account_store: AccountStore):
    account_store.add(_new())
    with pytest.raises(StateTransitionRaceError):
        account_store.transition_status("acct", SyncStatus.SYNCING, from_status=SyncStatus.SEEDING)


def test_invalid_transition_is_rejected(account_store: AccountStore):
    account_store.add(_new())
    account_store.transition_status("acct", SyncStatus.FAILED)

    with pytest.raises(InvalidStateTransitionError):
        account_store.transition_status("acct", SyncStatus.PENDING)
    reset = account_store.transition_status("acct", SyncStatus.PENDING, operator=True)
    assert reset.sync_status == SyncStatus.PENDING


# ============================================================================
# Tokens and queries
# ============================================================================


def test_token_failure_counter(account_store: AccountStore):
    account_store.add(_new())

    assert account_store.record_token_failure("acct", "401") == 1
    assert account_store.record_token_failure("acct", "401") == 2

    account = account_store.record_token_success(
        "acct", access_token="fresh", refresh_token=None, expires_at=utcnow() + timedelta(hours=1)
    )
    assert account.consecutive_failures == 0
    assert account.access_token == "fresh"


def test_due_for_forward_sync(account_store: AccountStore):
    now = utcnow()
    account_store.add(_new("due"))
    account_store.add(_new("recent"))
    account_store.add(_new("unverified", is_verified=False))
    account_store.add(_new("pending"))
    for account_id in ("due", "recent", "unverified"):
        account_store.transition_status(account_id, SyncStatus.SEEDING)
    account_store.update_fields("recent", last_forward_sync_at=now)

    due = account_store.due_for_forward_sync(
        [SyncStatus.SEEDING, SyncStatus.SYNCING, SyncStatus.COMPLETED], now - timedelta(minutes=2)
    )

    assert [account.id for account in due] == ["due"]


def test_stalled_uses_last_progress(account_store: AccountStore):
    now = utcnow()
    account_store.add(_new("stuck"))
    account_store.add(_new("moving"))
    for account_id in ("stuck", "moving"):
        account_store.transition_status(account_id, SyncStatus.SEEDING)
    account_store.update_fields("stuck", last_progress_at=now - timedelta(hours=1))
    account_store.update_fields("moving", last_progress_at=now)

    stalled = account_store.stalled([SyncStatus.SEEDING], now - timedelta(minutes=15))

    assert [account.id for account in stalled] == ["stuck"]
