"""Idempotent message store.

Every crawler writes through :meth:`MessageStore.store`. A message row is
identified by ``(account_id, folder, uid)`` and that triple is enforced by a
UNIQUE constraint, so replaying a batch after an at-least-once redelivery is
a no-op.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..adapters.parser import ParsedMessage
from ..models import FolderType, utcnow
from .database import connect, is_locked_error, to_iso

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL,
    folder TEXT NOT NULL,
    uid INTEGER NOT NULL,
    source_folder TEXT NOT NULL,
    message_id TEXT,
    thread_id TEXT,
    in_reply_to TEXT,
    from_email TEXT NOT NULL,
    from_name TEXT,
    to_addresses TEXT NOT NULL DEFAULT '[]',
    cc_addresses TEXT NOT NULL DEFAULT '[]',
    bcc_addresses TEXT NOT NULL DEFAULT '[]',
    reply_to TEXT,
    subject TEXT NOT NULL,
    preview TEXT,
    body_text TEXT,
    body_html TEXT,
    headers TEXT NOT NULL DEFAULT '{}',
    is_read INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    has_attachments INTEGER NOT NULL DEFAULT 0,
    attachments TEXT NOT NULL DEFAULT '[]',
    labels TEXT NOT NULL DEFAULT '[]',
    received_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(account_id, folder, uid)
);

CREATE INDEX IF NOT EXISTS idx_messages_source ON messages(account_id, source_folder, uid);
CREATE INDEX IF NOT EXISTS idx_messages_message_id ON messages(account_id, message_id);
CREATE INDEX IF NOT EXISTS idx_messages_received ON messages(received_at);
"""

# Folders that an "archive" classification never overrides
STICKY_FOLDERS = frozenset(
    {FolderType.INBOX, FolderType.SENT, FolderType.DRAFTS, FolderType.TRASH, FolderType.SPAM}
)
PRUNABLE_FOLDERS = (FolderType.TRASH, FolderType.SPAM, FolderType.DRAFTS)
# Destinations a message reaches by leaving every other mailbox
DISCARD_FOLDERS = frozenset({FolderType.TRASH, FolderType.SPAM})
LOCK_RETRIES = 3
LOCK_RETRY_DELAY = 0.1


def _moves_across_spaces(current: FolderType, target: FolderType) -> bool:
    """Whether a copy from another UID space relocates a stored message."""
    if current == FolderType.ARCHIVE:
        return True
    return target in DISCARD_FOLDERS and current not in DISCARD_FOLDERS


class StoreOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"  # Same Message-ID seen again under a new folder or uid
    SKIPPED = "skipped"  # Row already present


class MessageStore:
    """SQLite-backed message repository with insert-or-skip semantics."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._conn = connect(self._path)
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Existence checks
    # ------------------------------------------------------------------

    def exists(self, account_id: str, uid: int, source_folder: FolderType) -> bool:
        """True when ``uid`` of the ``source_folder`` UID space is already stored.

        Crawlers check before fetching so they do not download a body twice.
        A Gmail message seeded from the inbox view and one crawled from All
        Mail share the All Mail UID space, whatever folder their labels file
        them under.
        """
        with self._lock:
            row = self._conn.execute(
                """
                SELECT 1 FROM messages
                WHERE account_id = ? AND uid = ? AND source_folder = ?
                LIMIT 1
                """,
                (account_id, int(uid), source_folder.value),
            ).fetchone()
        return row is not None

    def existing_uids(self, account_id: str, source_folder: FolderType, uids: List[int]) -> set:
        if not uids:
            return set()
        placeholders = ", ".join("?" for _ in uids)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT uid FROM messages
                WHERE account_id = ? AND source_folder = ? AND uid IN ({placeholders})
                """,
                [account_id, source_folder.value, *[int(uid) for uid in uids]],
            ).fetchall()
        return {int(row[0]) for row in rows}

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, account_id: str, message: ParsedMessage) -> StoreOutcome:
        """Insert ``message`` unless it is already stored.

        Messages carrying a Message-ID are matched per account first and a
        known message is refreshed in place rather than duplicated. It only
        changes folder when the new copy comes from the same UID space, when
        it leaves the archive, or when it lands in trash or spam. Copies of
        one message in two mailboxes, such as mail sent to oneself, therefore
        stay where they were first stored and replays keep returning SKIPPED.

        Raises:
            sqlite3.OperationalError: If the database stays locked after retries
        """
        for attempt in range(1, LOCK_RETRIES + 1):
            try:
                return self._store_once(account_id, message)
            except sqlite3.OperationalError as exc:
                if not is_locked_error(exc) or attempt == LOCK_RETRIES:
                    raise
                logger.warning(
                    "Database locked while storing message, retrying",
                    extra={"account_id": account_id, "uid": message.uid, "attempt": attempt},
                )
                time.sleep(LOCK_RETRY_DELAY * attempt)
        raise RuntimeError("unreachable")  # pragma: no cover

    def _store_once(self, account_id: str, message: ParsedMessage) -> StoreOutcome:
        now = to_iso(utcnow())
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT id FROM messages WHERE account_id = ? AND folder = ? AND uid = ?",
                (account_id, message.folder.value, message.uid),
            ).fetchone()
            if row is not None:
                return StoreOutcome.SKIPPED

            if message.message_id:
                existing = self._conn.execute(
                    """
                    SELECT id, folder, source_folder FROM messages
                    WHERE account_id = ? AND message_id = ?
                    ORDER BY id LIMIT 1
                    """,
                    (account_id, message.message_id),
                ).fetchone()
                if existing is not None:
                    return self._rederive(existing, message, now)

            values = self._row_values(account_id, message)
            values.update({"created_at": now, "updated_at": now})
            columns = list(values)
            cur = self._conn.execute(
                f"""
                INSERT INTO messages({', '.join(columns)})
                VALUES ({', '.join('?' for _ in columns)})
                ON CONFLICT(account_id, folder, uid) DO NOTHING
                """,
                [values[column] for column in columns],
            )
        return StoreOutcome.INSERTED if cur.rowcount else StoreOutcome.SKIPPED

    def _rederive(self, existing: sqlite3.Row, message: ParsedMessage, now: str) -> StoreOutcome:
        """Refresh a known message with what the latest fetch observed."""
        current_folder = FolderType(existing["folder"])
        same_space = existing["source_folder"] == message.source_folder.value
        folder = message.folder
        if folder == FolderType.ARCHIVE and current_folder in STICKY_FOLDERS:
            folder = current_folder
        elif not same_space and not _moves_across_spaces(current_folder, folder):
            folder = current_folder
        if folder == current_folder:
            self._conn.execute(
                "UPDATE messages SET is_read = ?, is_starred = ?, labels = ?, updated_at = ? WHERE id = ?",
                (
                    int(message.is_read),
                    int(message.is_starred),
                    json.dumps(message.labels),
                    now,
                    existing["id"],
                ),
            )
            return StoreOutcome.SKIPPED
        cur = self._conn.execute(
            """
            UPDATE OR IGNORE messages
            SET folder = ?, uid = ?, source_folder = ?, is_read = ?, is_starred = ?,
                labels = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                folder.value,
                message.uid,
                message.source_folder.value,
                int(message.is_read),
                int(message.is_starred),
                json.dumps(message.labels),
                now,
                existing["id"],
            ),
        )
        return StoreOutcome.UPDATED if cur.rowcount else StoreOutcome.SKIPPED

    @staticmethod
    def _row_values(account_id: str, message: ParsedMessage) -> Dict[str, Any]:
        def addresses(items) -> str:
            return json.dumps([item.model_dump() for item in items])

        reply_to = message.reply_to_addresses[0].address if message.reply_to_addresses else None
        return {
            "account_id": account_id,
            "folder": message.folder.value,
            "uid": message.uid,
            "source_folder": message.source_folder.value,
            "message_id": message.message_id,
            "thread_id": message.thread_id,
            "in_reply_to": message.in_reply_to,
            "from_email": message.from_address.address,
            "from_name": message.from_address.display_name,
            "to_addresses": addresses(message.to_addresses),
            "cc_addresses": addresses(message.cc_addresses),
            "bcc_addresses": addresses(message.bcc_addresses),
            "reply_to": reply_to,
            "subject": message.subject,
            "preview": message.preview,
            "body_text": message.body_text,
            "body_html": message.body_html,
            "headers": json.dumps(message.headers),
            "is_read": int(message.is_read),
            "is_starred": int(message.is_starred),
            "has_attachments": int(message.has_attachments),
            "attachments": json.dumps([item.model_dump() for item in message.attachments]),
            "labels": json.dumps(message.labels),
            "received_at": to_iso(message.received_at),
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, account_id: str, folder: FolderType, uid: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM messages WHERE account_id = ? AND folder = ? AND uid = ?",
                (account_id, folder.value, int(uid)),
            ).fetchone()
        return dict(row) if row else None

    def count(self, account_id: str, folder: Optional[FolderType] = None) -> int:
        query = "SELECT COUNT(*) FROM messages WHERE account_id = ?"
        params: List[Any] = [account_id]
        if folder is not None:
            query += " AND folder = ?"
            params.append(folder.value)
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return int(row[0]) if row else 0

    def counts_by_folder(self, account_id: str) -> Dict[FolderType, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT folder, COUNT(*) FROM messages WHERE account_id = ? GROUP BY folder",
                (account_id,),
            ).fetchall()
        return {FolderType(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def delete_for_account(self, account_id: str) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM messages WHERE account_id = ?", (account_id,))
        return cur.rowcount

    def prune_folders(self, older_than: datetime) -> int:
        """Delete trash, spam and drafts received before ``older_than``."""
        folders = [folder.value for folder in PRUNABLE_FOLDERS]
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"""
                DELETE FROM messages
                WHERE folder IN ({', '.join('?' for _ in folders)}) AND received_at < ?
                """,
                [*folders, to_iso(older_than)],
            )
        return cur.rowcount

    def clear_bodies(self, older_than: datetime) -> int:
        """Drop bodies of kept messages received before ``older_than``."""
        folders = [folder.value for folder in PRUNABLE_FOLDERS]
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"""
                UPDATE messages
                SET body_text = NULL, body_html = NULL, updated_at = ?
                WHERE folder NOT IN ({', '.join('?' for _ in folders)})
                  AND received_at < ?
                  AND (body_text IS NOT NULL OR body_html IS NOT NULL)
                """,
                [to_iso(utcnow()), *folders, to_iso(older_than)],
            )
        return cur.rowcount


__all__ = ["MessageStore", "PRUNABLE_FOLDERS", "STICKY_FOLDERS", "StoreOutcome"]
