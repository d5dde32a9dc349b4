"""Account persistence with field-level, race-aware updates.

Several job types mutate the same account row concurrently. Every write here
touches only the columns it names; cursor writes are expressed in SQL so that
a stale reader can never move a cursor the wrong way, and status changes are
conditional on the status the caller observed.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import AccountNotFoundError, StateTransitionRaceError
from ..models import Account, FolderProgress, FolderType, SyncCursor, SyncStatus, utcnow
from ..state_machine import validate_transition
from .database import connect, from_iso, to_iso

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    provider TEXT NOT NULL,
    auth_type TEXT NOT NULL,
    username TEXT,
    imap_host TEXT,
    imap_port INTEGER NOT NULL,
    imap_encryption TEXT NOT NULL,
    smtp_host TEXT,
    smtp_port INTEGER NOT NULL,
    smtp_encryption TEXT NOT NULL,
    password TEXT,
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_verified INTEGER NOT NULL DEFAULT 0,
    disabled_folders TEXT NOT NULL DEFAULT '[]',
    sync_status TEXT NOT NULL DEFAULT 'pending',
    sync_cursor TEXT,
    forward_uid_cursor INTEGER,
    backfill_uid_cursor INTEGER,
    backfill_complete INTEGER NOT NULL DEFAULT 0,
    uid_epoch INTEGER NOT NULL DEFAULT 0,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    needs_reauth INTEGER NOT NULL DEFAULT 0,
    sync_error TEXT,
    last_forward_sync_at TEXT,
    last_backfill_at TEXT,
    sync_started_at TEXT,
    initial_sync_completed_at TEXT,
    last_sync_at TEXT,
    last_progress_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_accounts_status ON accounts(sync_status);
"""

_DATETIME_COLUMNS = {
    "token_expires_at",
    "last_forward_sync_at",
    "last_backfill_at",
    "sync_started_at",
    "initial_sync_completed_at",
    "last_sync_at",
    "last_progress_at",
    "created_at",
    "updated_at",
}
_BOOL_COLUMNS = {"is_active", "is_verified", "backfill_complete", "needs_reauth"}
_COLUMNS = list(Account.model_fields.keys())
# Columns managed by the store itself
_PROTECTED_COLUMNS = {"id", "created_at", "updated_at", "version"}
_CAS_RETRIES = 5


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _DATETIME_COLUMNS:
        return to_iso(value)
    if column in _BOOL_COLUMNS:
        return int(bool(value))
    if column == "sync_cursor":
        cursor = value if isinstance(value, SyncCursor) else SyncCursor.model_validate(value)
        return cursor.model_dump_json()
    if column == "disabled_folders":
        return json.dumps([FolderType(folder).value for folder in value])
    if isinstance(value, Enum):
        return value.value
    return value


def _decode(row: sqlite3.Row) -> Account:
    data: Dict[str, Any] = dict(row)
    for column in _BOOL_COLUMNS:
        data[column] = bool(data[column])
    for column in _DATETIME_COLUMNS:
        data[column] = from_iso(data[column])
    raw_cursor = data.get("sync_cursor")
    data["sync_cursor"] = (
        SyncCursor.model_validate_json(raw_cursor) if raw_cursor else SyncCursor.initial()
    )
    data["disabled_folders"] = json.loads(data.get("disabled_folders") or "[]")
    return Account(**data)


class AccountStore:
    """SQLite-backed account repository."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._conn = connect(self._path)
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Whole-account operations
    # ------------------------------------------------------------------

    def add(self, account: Account) -> Account:
        """Insert a new account.

        Raises:
            ValueError: If an account with the same id already exists
        """
        now = utcnow()
        values = account.model_copy(update={"created_at": now, "updated_at": now, "version": 0})
        placeholders = ", ".join("?" for _ in _COLUMNS)
        params = [_encode(column, getattr(values, column)) for column in _COLUMNS]
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO accounts({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    params,
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Account {account.id} already exists") from exc
        logger.info(
            "Account added",
            extra={"account_id": account.id, "provider": account.provider.value},
        )
        return self.get(account.id)

    def find(self, account_id: str) -> Optional[Account]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return _decode(row) if row else None

    def get(self, account_id: str) -> Account:
        account = self.find(account_id)
        if account is None:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        return account

    def list(self, statuses: Optional[Iterable[SyncStatus]] = None) -> List[Account]:
        query = "SELECT * FROM accounts"
        params: List[Any] = []
        if statuses is not None:
            wanted = [SyncStatus(status).value for status in statuses]
            if not wanted:
                return []
            query += f" WHERE sync_status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        query += " ORDER BY created_at, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_decode(row) for row in rows]

    def delete(self, account_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))

    # ------------------------------------------------------------------
    # Field-level updates
    # ------------------------------------------------------------------

    def update_fields(
        self,
        account_id: str,
        *,
        expected_version: Optional[int] = None,
        **fields: Any,
    ) -> Account:
        """Update only the named columns.

        Args:
            account_id: Account identifier
            expected_version: When given, the update applies only if the row
                still carries this version
            **fields: Column values to write

        Returns:
            The account as stored after the update

        Raises:
            AccountNotFoundError: If the account does not exist
            StateTransitionRaceError: If ``expected_version`` no longer matches
        """
        unknown = set(fields) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        protected = set(fields) & _PROTECTED_COLUMNS
        if protected:
            raise ValueError(f"Fields managed by the store: {sorted(protected)}")

        assignments = [f"{column} = ?" for column in fields]
        params: List[Any] = [_encode(column, value) for column, value in fields.items()]
        assignments.extend(["updated_at = ?", "version = version + 1"])
        params.append(to_iso(utcnow()))
        query = f"UPDATE accounts SET {', '.join(assignments)} WHERE id = ?"
        params.append(account_id)
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
        if cur.rowcount == 0:
            current = self.get(account_id)
            raise StateTransitionRaceError(
                f"Account {account_id} changed concurrently "
                f"(expected version {expected_version}, found {current.version})"
            )
        return self.get(account_id)

    def advance_forward_cursor(self, account_id: str, uid: int) -> int:
        """Raise the forward cursor to ``uid`` unless it is already higher.

        Returns:
            The stored cursor value
        """
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE accounts
                SET forward_uid_cursor = MAX(COALESCE(forward_uid_cursor, 0), ?),
                    updated_at = ?,
                    version = version + 1
                WHERE id = ?
                """,
                (int(uid), to_iso(utcnow()), account_id),
            )
            row = self._conn.execute(
                "SELECT forward_uid_cursor FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        return int(row[0])

    def lower_backfill_cursor(
        self, account_id: str, uid: int, *, uid_epoch: Optional[int] = None
    ) -> Optional[int]:
        """Lower the backfill cursor to ``uid`` unless it is already lower.

        A cursor computed before a UID reset belongs to the old numbering.
        Passing the ``uid_epoch`` the batch started in discards such a write.

        Returns:
            The stored cursor value, or None when the write was discarded
        """
        now = to_iso(utcnow())
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE accounts
                SET backfill_uid_cursor = CASE
                        WHEN backfill_uid_cursor IS NULL OR ? < backfill_uid_cursor THEN ?
                        ELSE backfill_uid_cursor
                    END,
                    last_progress_at = ?,
                    updated_at = ?,
                    version = version + 1
                WHERE id = ? AND (? IS NULL OR uid_epoch = ?)
                """,
                (int(uid), int(uid), now, now, account_id, uid_epoch, uid_epoch),
            )
            row = self._conn.execute(
                "SELECT backfill_uid_cursor FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        if cur.rowcount == 0:
            logger.warning(
                "Backfill cursor from before a UID reset discarded",
                extra={"account_id": account_id, "backfill_cursor": uid},
            )
            return None
        return int(row[0])

    def reset_uid_cursors(self, account_id: str) -> Account:
        """Forget both UID cursors after the server renumbered the mailbox.

        The UID epoch moves on so that batches still running against the old
        numbering cannot write their cursors back.
        """
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE accounts
                SET forward_uid_cursor = NULL,
                    backfill_uid_cursor = NULL,
                    backfill_complete = 0,
                    uid_epoch = uid_epoch + 1,
                    updated_at = ?,
                    version = version + 1
                WHERE id = ?
                """,
                (to_iso(utcnow()), account_id),
            )
        if cur.rowcount == 0:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        return self.get(account_id)

    def update_folder_progress(
        self,
        account_id: str,
        folder: FolderType,
        *,
        synced: int,
        total: Optional[int],
    ) -> SyncCursor:
        """Record walker progress for one folder of the structured cursor.

        The cursor is a JSON document, so the write is a compare-and-set on
        the row version, retried when another writer got in first.
        """
        for attempt in range(_CAS_RETRIES):
            account = self.get(account_id)
            cursor = account.sync_cursor.model_copy(deep=True)
            previous = cursor.progress_for(folder)
            cursor.folders[folder] = FolderProgress(
                synced=synced, total=total, priority=previous.priority
            )
            try:
                self.update_fields(
                    account_id,
                    expected_version=account.version,
                    sync_cursor=cursor,
                    last_progress_at=utcnow(),
                )
            except StateTransitionRaceError:
                logger.debug(
                    "Cursor write raced, retrying",
                    extra={"account_id": account_id, "folder": folder.value, "attempt": attempt + 1},
                )
                continue
            return cursor
        raise StateTransitionRaceError(
            f"Could not update folder progress for account {account_id} after {_CAS_RETRIES} attempts"
        )

    def transition_status(
        self,
        account_id: str,
        to_status: SyncStatus,
        *,
        from_status: Optional[SyncStatus] = None,
        operator: bool = False,
        reason: Optional[str] = None,
        **fields: Any,
    ) -> Account:
        """Move the account to ``to_status`` together with extra field writes.

        Args:
            account_id: Account identifier
            to_status: Target status
            from_status: Status the caller observed; defaults to the stored one
            operator: Allow re-authentication and reset moves
            reason: Optional reason for logging
            **fields: Additional columns written in the same statement

        Raises:
            InvalidStateTransitionError: If the move is not allowed
            StateTransitionRaceError: If the stored status is not ``from_status``
        """
        current = self.get(account_id)
        observed = from_status or current.sync_status
        if current.sync_status != observed:
            raise StateTransitionRaceError(
                f"Account {account_id} is {current.sync_status.value}, expected {observed.value}"
            )
        validate_transition(account_id, observed, to_status, operator=operator, reason=reason)

        assignments = ["sync_status = ?"]
        params: List[Any] = [to_status.value]
        for column, value in fields.items():
            if column not in _COLUMNS or column in _PROTECTED_COLUMNS or column == "sync_status":
                raise ValueError(f"Field cannot be written with a transition: {column}")
            assignments.append(f"{column} = ?")
            params.append(_encode(column, value))
        assignments.extend(["updated_at = ?", "version = version + 1"])
        params.extend([to_iso(utcnow()), account_id, observed.value])

        with self._lock, self._conn:
            cur = self._conn.execute(
                f"UPDATE accounts SET {', '.join(assignments)} WHERE id = ? AND sync_status = ?",
                params,
            )
        if cur.rowcount == 0:
            raise StateTransitionRaceError(
                f"Account {account_id} left {observed.value} before the transition to {to_status.value}"
            )
        logger.info(
            "Account status changed",
            extra={
                "account_id": account_id,
                "from_status": observed.value,
                "to_status": to_status.value,
                "reason": reason,
            },
        )
        return self.get(account_id)

    # ------------------------------------------------------------------
    # Token bookkeeping
    # ------------------------------------------------------------------

    def record_token_failure(self, account_id: str, error: str) -> int:
        """Increment the refresh failure counter atomically.

        Returns:
            The new number of consecutive failures
        """
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE accounts
                SET consecutive_failures = consecutive_failures + 1,
                    sync_error = ?,
                    updated_at = ?,
                    version = version + 1
                WHERE id = ?
                """,
                (error, to_iso(utcnow()), account_id),
            )
            row = self._conn.execute(
                "SELECT consecutive_failures FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        return int(row[0])

    def record_token_success(
        self,
        account_id: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
    ) -> Account:
        fields: Dict[str, Any] = {
            "access_token": access_token,
            "token_expires_at": expires_at,
            "consecutive_failures": 0,
            "needs_reauth": False,
        }
        if refresh_token:
            fields["refresh_token"] = refresh_token
        return self.update_fields(account_id, **fields)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def due_for_forward_sync(
        self, statuses: Iterable[SyncStatus], cutoff: datetime
    ) -> List[Account]:
        """Eligible accounts whose last forward crawl is older than ``cutoff``."""
        wanted = [SyncStatus(status).value for status in statuses]
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM accounts
                WHERE is_active = 1
                  AND is_verified = 1
                  AND needs_reauth = 0
                  AND sync_status IN ({', '.join('?' for _ in wanted)})
                  AND (last_forward_sync_at IS NULL OR last_forward_sync_at <= ?)
                ORDER BY COALESCE(last_forward_sync_at, '')
                """,
                [*wanted, to_iso(cutoff)],
            ).fetchall()
        return [_decode(row) for row in rows]

    def stalled(self, statuses: Iterable[SyncStatus], cutoff: datetime) -> List[Account]:
        """Accounts in ``statuses`` that made no import progress since ``cutoff``."""
        wanted = [SyncStatus(status).value for status in statuses]
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM accounts
                WHERE is_active = 1
                  AND needs_reauth = 0
                  AND sync_status IN ({', '.join('?' for _ in wanted)})
                  AND COALESCE(last_progress_at, sync_started_at, created_at) <= ?
                """,
                [*wanted, to_iso(cutoff)],
            ).fetchall()
        return [_decode(row) for row in rows]


__all__ = ["AccountStore", "SCHEMA"]
