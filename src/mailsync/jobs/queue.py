"""Persistent job queue with named queues, delayed dispatch and unique locks."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from ..models import utcnow
from ..store.database import connect, from_iso, to_iso
from .models import JobPriority, JobStatus, JobType, QueueName, SyncJob

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    queue TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority INTEGER NOT NULL,
    scheduled_for TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    unique_key TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_ready ON jobs(queue, status, scheduled_for);

CREATE TABLE IF NOT EXISTS job_locks (
    key TEXT PRIMARY KEY,
    owner_job_id TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""


class JobQueue:
    """SQLite-backed persistent queue for sync jobs.

    Delivery is at-least-once: a job is handed out again after a crash once
    :meth:`requeue_stale` resets it, so handlers must be idempotent.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._conn = connect(self._path)
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    def enqueue(self, job: SyncJob, *, lock_ttl_seconds: Optional[int] = None) -> bool:
        """Add ``job`` to its queue.

        When the job carries a ``unique_key`` and a TTL is given, the job is
        refused while another job holds an unexpired lock on that key.

        Returns:
            False when the unique lock is held, True otherwise
        """
        now = utcnow()
        with self._lock, self._conn:
            if job.unique_key and lock_ttl_seconds:
                self._conn.execute(
                    "DELETE FROM job_locks WHERE key = ? AND expires_at <= ?",
                    (job.unique_key, to_iso(now)),
                )
                try:
                    self._conn.execute(
                        "INSERT INTO job_locks(key, owner_job_id, expires_at) VALUES (?, ?, ?)",
                        (
                            job.unique_key,
                            job.job_id,
                            to_iso(now + timedelta(seconds=lock_ttl_seconds)),
                        ),
                    )
                except sqlite3.IntegrityError:
                    logger.debug(
                        "Unique lock held, job not dispatched",
                        extra={"job_type": job.job_type.value, "unique_key": job.unique_key},
                    )
                    return False
            self._conn.execute(
                """
                INSERT INTO jobs(job_id, job_type, queue, payload, priority, scheduled_for,
                                 status, attempts, unique_key, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.job_type.value,
                    job.queue.value,
                    json.dumps(job.payload),
                    job.priority.value,
                    to_iso(job.scheduled_for or now),
                    job.unique_key,
                    to_iso(now),
                    to_iso(now),
                ),
            )
        return True

    def fetch_pending(self, queue: QueueName, limit: int = 10) -> List[SyncJob]:
        """Due jobs of ``queue``, highest priority first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM jobs
                WHERE queue = ? AND status = 'pending' AND scheduled_for <= ?
                ORDER BY priority DESC, scheduled_for
                LIMIT ?
                """,
                (queue.value, to_iso(utcnow()), limit),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def mark_running(self, job_id: str) -> bool:
        """Claim a pending job; False when another worker claimed it first."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE jobs SET status = 'running', attempts = attempts + 1, updated_at = ?
                WHERE job_id = ? AND status = 'pending'
                """,
                (to_iso(utcnow()), job_id),
            )
        return cur.rowcount == 1

    def mark_completed(self, job_id: str) -> None:
        self._finish(job_id, JobStatus.SUCCEEDED, None)

    def mark_failed(self, job_id: str, error: Optional[str] = None) -> None:
        self._finish(job_id, JobStatus.FAILED, error)

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str]) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE jobs SET status = ?, last_error = COALESCE(?, last_error), updated_at = ? WHERE job_id = ?",
                (status.value, error, to_iso(utcnow()), job_id),
            )
            self._conn.execute("DELETE FROM job_locks WHERE owner_job_id = ?", (job_id,))

    def reschedule(self, job_id: str, retry_delay_seconds: int, error: Optional[str] = None) -> None:
        """Put a failed attempt back as pending after ``retry_delay_seconds``."""
        now = utcnow()
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', scheduled_for = ?, last_error = ?, updated_at = ?
                WHERE job_id = ?
                """,
                (to_iso(now + timedelta(seconds=retry_delay_seconds)), error, to_iso(now), job_id),
            )

    def requeue_stale(self, older_than: datetime) -> int:
        """Reset jobs left running by a dead worker."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE jobs SET status = 'pending', updated_at = ? WHERE status = 'running' AND updated_at < ?",
                (to_iso(utcnow()), to_iso(older_than)),
            )
        if cur.rowcount:
            logger.warning("Requeued stale running jobs", extra={"count": cur.rowcount})
        return cur.rowcount

    def purge_finished(self, older_than: datetime) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM jobs WHERE status IN ('succeeded', 'failed') AND updated_at < ?",
                (to_iso(older_than),),
            )
        return cur.rowcount

    def get(self, job_id: str) -> Optional[SyncJob]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        *,
        job_type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
        account_id: Optional[str] = None,
    ) -> List[SyncJob]:
        clauses = []
        params: List[str] = []
        if job_type is not None:
            clauses.append("job_type = ?")
            params.append(job_type.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY scheduled_for", params
            ).fetchall()
        jobs = [self._row_to_job(row) for row in rows]
        if account_id is not None:
            jobs = [job for job in jobs if job.account_id == account_id]
        return jobs

    def pending_count(self, queue: Optional[QueueName] = None) -> int:
        query = "SELECT COUNT(*) FROM jobs WHERE status = 'pending'"
        params: List[str] = []
        if queue is not None:
            query += " AND queue = ?"
            params.append(queue.value)
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return int(row[0]) if row else 0

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Job counts per queue and status."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT queue, status, COUNT(*) FROM jobs GROUP BY queue, status"
            ).fetchall()
        counts: Dict[str, Dict[str, int]] = {}
        for queue, status, count in rows:
            counts.setdefault(queue, {})[status] = int(count)
        return counts

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> SyncJob:
        return SyncJob(
            job_id=row["job_id"],
            job_type=JobType(row["job_type"]),
            payload=json.loads(row["payload"]),
            queue=QueueName(row["queue"]),
            priority=JobPriority(row["priority"]),
            scheduled_for=from_iso(row["scheduled_for"]),
            attempts=int(row["attempts"]),
            unique_key=row["unique_key"],
            last_error=row["last_error"],
            status=JobStatus(row["status"]),
        )


__all__ = ["JobQueue", "SCHEMA"]
