"""Append-only audit trail of engine activity."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import utcnow
from .database import connect, from_iso, to_iso

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL,
    action TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_log_account ON sync_log(account_id, created_at);
"""


@dataclass(frozen=True)
class SyncLogEntry:
    """One recorded engine action."""

    account_id: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "account_id": self.account_id,
            "action": self.action,
            "created_at": self.created_at.isoformat(),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class SyncLog:
    """SQLite-backed sync log.

    The engine only ever appends. Deleting entries is reserved for the
    operator commands (account reset and retention pruning).
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._conn = connect(self._path)
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    def record(self, account_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> SyncLogEntry:
        entry = SyncLogEntry(account_id=account_id, action=action, details=dict(details or {}))
        self.append(entry)
        return entry

    def append(self, entry: SyncLogEntry) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO sync_log(account_id, action, details, created_at) VALUES (?, ?, ?, ?)",
                (
                    entry.account_id,
                    entry.action,
                    json.dumps(entry.details, default=str),
                    to_iso(entry.created_at),
                ),
            )
        logger.debug(
            "Sync log entry recorded",
            extra={"account_id": entry.account_id, "action": entry.action},
        )

    def entries(
        self,
        account_id: Optional[str] = None,
        *,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        """Most recent entries first."""
        clauses = []
        params: List[Any] = []
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT account_id, action, details, created_at FROM sync_log
                {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [
            SyncLogEntry(
                account_id=row["account_id"],
                action=row["action"],
                details=json.loads(row["details"] or "{}"),
                created_at=from_iso(row["created_at"]),
            )
            for row in rows
        ]

    def delete_for_account(self, account_id: str) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM sync_log WHERE account_id = ?", (account_id,))
        return cur.rowcount

    def prune(self, older_than: datetime) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM sync_log WHERE created_at < ?", (to_iso(older_than),)
            )
        return cur.rowcount


__all__ = ["SyncLog", "SyncLogEntry"]
