"""Async worker draining the named queues.

Handlers are blocking (every IMAP call blocks), so each job runs in a thread
pool with its policy timeout. The pool has one thread per queue slot and a
slot is only freed once its thread returns, so a job starts running as soon
as it is submitted and its timeout never includes time spent waiting for a
thread. Each queue has its own concurrency limit so a long backfill cannot
starve the live queue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..config import WorkerConfig
from ..models import utcnow
from .dispatcher import JobDispatcher
from .models import Continuation, JobType, QueueName, SyncJob
from .queue import JobQueue
from .retry_policy import RetryPolicy, RetryPolicyRegistry, classify_failure

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    def handle(self, job: SyncJob) -> Optional[Continuation]:
        ...

    def failed(self, job: SyncJob, exc: BaseException) -> None:
        ...


class JobTimeoutError(TimeoutError):
    """An attempt ran past its policy timeout."""


class SyncWorker:
    """Runs queued jobs with retries, timeouts and continuations.

    Args:
        queue: Persistent job queue
        dispatcher: Used to dispatch continuations returned by handlers
        handlers: Handler per job type
        policies: Retry policies
        config: Per-queue concurrency and poll interval
    """

    def __init__(
        self,
        queue: JobQueue,
        dispatcher: JobDispatcher,
        handlers: Mapping[JobType, JobHandler],
        policies: Optional[RetryPolicyRegistry] = None,
        config: Optional[WorkerConfig] = None,
    ) -> None:
        self.queue = queue
        self.dispatcher = dispatcher
        self.handlers = dict(handlers)
        self.policies = policies or dispatcher.policies
        self.config = config or WorkerConfig()
        self._limits: Dict[QueueName, int] = {
            QueueName.LIVE: self.config.live_concurrency,
            QueueName.BACKFILL: self.config.backfill_concurrency,
            QueueName.SYNC: self.config.default_concurrency,
            QueueName.MAINTENANCE: self.config.default_concurrency,
        }
        self._active: Dict[QueueName, int] = {name: 0 for name in QueueName}
        self._executor = ThreadPoolExecutor(
            max_workers=sum(self._limits.values()), thread_name_prefix="mailsync-job"
        )
        self._tasks: "set[asyncio.Task[None]]" = set()
        self._stopping: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def recover(self) -> int:
        """Reset jobs a previous process left running."""
        longest = max(policy.timeout_seconds for policy in self.policies.list_policies().values())
        return self.queue.requeue_stale(utcnow() - timedelta(seconds=longest))

    async def run_once(self) -> int:
        """Run every due job once, respecting the queue limits.

        Returns:
            Number of jobs executed
        """
        started: List[asyncio.Task[None]] = []
        for name in QueueName:
            started.extend(self._start_ready(name))
        if started:
            await asyncio.gather(*started)
        return len(started)

    async def run_forever(self) -> None:
        self._stopping = asyncio.Event()
        self.recover()
        logger.info("Sync worker started", extra={"limits": {k.value: v for k, v in self._limits.items()}})
        try:
            while not self._stopping.is_set():
                for name in QueueName:
                    self._start_ready(name)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.config.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            logger.info("Sync worker stopped")

    def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _start_ready(self, name: QueueName) -> List["asyncio.Task[None]"]:
        free = self._limits[name] - self._active[name]
        if free <= 0:
            return []
        started = []
        for job in self.queue.fetch_pending(name, limit=free):
            if not self.queue.mark_running(job.job_id):
                continue
            job.attempts += 1
            self._active[name] += 1
            task = asyncio.get_running_loop().create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        return started

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run_job(self, job: SyncJob) -> None:
        try:
            await self._process_job(job)
        except Exception:  # noqa: BLE001
            # Tasks started by the polling loop are never awaited
            logger.exception(
                "Job bookkeeping failed",
                extra={"job_id": job.job_id, "job_type": job.job_type.value, "account_id": job.account_id},
            )
        finally:
            self._active[job.queue] -= 1

    async def _process_job(self, job: SyncJob) -> None:
        policy = self.policies.get_policy(job.job_type)
        handler = self.handlers.get(job.job_type)
        if handler is None:
            logger.error("No handler registered", extra={"job_id": job.job_id, "job_type": job.job_type.value})
            self.queue.mark_failed(job.job_id, f"No handler for {job.job_type.value}")
            return

        logger.info(
            "Processing job",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type.value,
                "account_id": job.account_id,
                "attempt": job.attempts,
            },
        )
        start = time.perf_counter()
        future = asyncio.get_running_loop().run_in_executor(self._executor, handler.handle, job)
        try:
            continuation = await asyncio.wait_for(asyncio.shield(future), timeout=policy.timeout_seconds)
        except asyncio.TimeoutError:
            await self._wait_for_overrun(job, future, policy)
            self._handle_failure(
                job, policy, handler, JobTimeoutError(f"Job exceeded {policy.timeout_seconds}s timeout")
            )
            return
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(job, policy, handler, exc)
            return

        self.queue.mark_completed(job.job_id)
        logger.info(
            "Job completed",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type.value,
                "account_id": job.account_id,
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        if continuation is not None:
            self.dispatcher.dispatch_continuation(continuation)

    async def _wait_for_overrun(
        self, job: SyncJob, future: "asyncio.Future[Any]", policy: RetryPolicy
    ) -> None:
        """Keep the job running, and its slot taken, until the thread returns.

        Threads cannot be interrupted. Rescheduling before the handler has
        returned would let a retry run alongside the attempt that timed out.
        """
        logger.warning(
            "Job exceeded its timeout, waiting for the handler to return",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type.value,
                "account_id": job.account_id,
                "timeout_seconds": policy.timeout_seconds,
            },
        )
        try:
            await future
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Timed out job raised after its deadline",
                extra={"job_id": job.job_id, "error": str(exc)},
            )

    def _handle_failure(
        self,
        job: SyncJob,
        policy: RetryPolicy,
        handler: JobHandler,
        exc: BaseException,
    ) -> None:
        failure_type = classify_failure(exc)
        if policy.should_retry(job.attempts, failure_type):
            delay = policy.calculate_delay(job.attempts, failure_type)
            logger.warning(
                "Job attempt failed, retry scheduled",
                extra={
                    "job_id": job.job_id,
                    "job_type": job.job_type.value,
                    "account_id": job.account_id,
                    "attempt": job.attempts,
                    "delay_seconds": delay,
                    "failure_type": failure_type.value,
                    "error": str(exc),
                },
            )
            self.queue.reschedule(job.job_id, delay, str(exc))
            return

        logger.error(
            "Job failed permanently",
            exc_info=exc,
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type.value,
                "account_id": job.account_id,
                "attempt": job.attempts,
                "failure_type": failure_type.value,
            },
        )
        self.queue.mark_failed(job.job_id, str(exc))
        try:
            handler.failed(job, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Failure hook raised", extra={"job_id": job.job_id})


__all__ = ["JobHandler", "JobTimeoutError", "SyncWorker"]
