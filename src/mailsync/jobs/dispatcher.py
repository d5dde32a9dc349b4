"""Turns job requests into queued jobs with their unique keys."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from ..models import utcnow
from .models import Continuation, JobPriority, JobType, SyncJob, new_job_id
from .queue import JobQueue
from .retry_policy import RetryPolicyRegistry

logger = logging.getLogger(__name__)


def _forward_key(payload: Dict[str, Any]) -> str:
    return f"forward:{payload['account_id']}"


def _backfill_key(payload: Dict[str, Any]) -> str:
    return f"backfill:{payload['account_id']}:{payload.get('folder') or 'all'}"


def _folder_sync_key(payload: Dict[str, Any]) -> str:
    return f"folder_sync:{payload['account_id']}:{payload['folder']}"


def _prune_key(payload: Dict[str, Any]) -> str:
    return "prune"


UNIQUE_KEYS: Dict[JobType, Callable[[Dict[str, Any]], str]] = {
    JobType.FORWARD: _forward_key,
    JobType.BACKFILL: _backfill_key,
    JobType.FOLDER_SYNC: _folder_sync_key,
    JobType.PRUNE: _prune_key,
}

DEFAULT_PRIORITIES: Dict[JobType, JobPriority] = {
    JobType.SEED: JobPriority.HIGH,
    JobType.FORWARD: JobPriority.HIGH,
    JobType.FOLDER_SYNC: JobPriority.NORMAL,
    JobType.BACKFILL: JobPriority.LOW,
    JobType.PRUNE: JobPriority.LOW,
}


class JobDispatcher:
    """Places jobs on the queue named by their retry policy."""

    def __init__(self, queue: JobQueue, policies: Optional[RetryPolicyRegistry] = None) -> None:
        self.queue = queue
        self.policies = policies or RetryPolicyRegistry()

    def dispatch(
        self,
        job_type: JobType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        delay_seconds: int = 0,
        priority: Optional[JobPriority] = None,
    ) -> Optional[str]:
        """Queue a job.

        Returns:
            The job id, or None when a unique lock refused the dispatch
        """
        payload = dict(payload or {})
        policy = self.policies.get_policy(job_type)
        key_fn = UNIQUE_KEYS.get(job_type)
        unique_key = key_fn(payload) if key_fn and policy.unique_for_seconds else None
        job = SyncJob(
            job_id=new_job_id(),
            job_type=job_type,
            payload=payload,
            queue=policy.queue,
            priority=priority or DEFAULT_PRIORITIES[job_type],
            scheduled_for=utcnow() + timedelta(seconds=max(0, delay_seconds)),
            unique_key=unique_key,
        )
        if not self.queue.enqueue(job, lock_ttl_seconds=policy.unique_for_seconds):
            return None
        logger.debug(
            "Job dispatched",
            extra={
                "job_id": job.job_id,
                "job_type": job_type.value,
                "queue": policy.queue.value,
                "account_id": payload.get("account_id"),
                "delay_seconds": delay_seconds,
            },
        )
        return job.job_id

    def dispatch_continuation(self, continuation: Continuation) -> Optional[str]:
        return self.dispatch(
            continuation.job_type,
            continuation.payload,
            delay_seconds=continuation.delay_seconds,
        )


__all__ = ["DEFAULT_PRIORITIES", "JobDispatcher", "UNIQUE_KEYS"]
