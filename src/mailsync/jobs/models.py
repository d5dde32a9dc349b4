"""Job models for the sync worker."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class JobPriority(int, Enum):
    LOW = 1
    NORMAL = 2
    HIGH = 3


class QueueName(str, Enum):
    LIVE = "live"  # Forward crawler
    BACKFILL = "backfill"
    SYNC = "sync"  # Seed and folder walker
    MAINTENANCE = "maintenance"


class JobType(str, Enum):
    SEED = "seed"
    FORWARD = "forward"
    BACKFILL = "backfill"
    FOLDER_SYNC = "folder_sync"
    PRUNE = "prune"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class SyncJob:
    """One unit of work on a named queue."""

    job_id: str
    job_type: JobType
    payload: Dict[str, Any]
    queue: QueueName = QueueName.SYNC
    priority: JobPriority = JobPriority.NORMAL
    scheduled_for: Optional[datetime] = None
    attempts: int = 0
    unique_key: Optional[str] = None
    last_error: Optional[str] = None
    status: JobStatus = JobStatus.PENDING

    @property
    def account_id(self) -> Optional[str]:
        return self.payload.get("account_id")


@dataclass(frozen=True)
class Continuation:
    """Follow-up step a handler asks the worker to dispatch once it finishes."""

    job_type: JobType
    payload: Dict[str, Any] = field(default_factory=dict)
    delay_seconds: int = 0


__all__ = [
    "Continuation",
    "JobPriority",
    "JobStatus",
    "JobType",
    "QueueName",
    "SyncJob",
    "new_job_id",
]
