"""Retry policies per job type with failure-specific handling.

Each job type has a fixed backoff schedule, an attempt budget, a hard timeout
and an optional unique-dispatch window. Defaults can be overridden from the
``retry_policies`` section of the configuration file.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import (
    AccountNotFoundError,
    AdapterError,
    InvalidStateTransitionError,
    ReauthRequiredError,
    TokenRefreshError,
)
from .models import JobType, QueueName


class FailureType(str, Enum):
    """Failure classification for retry decisions."""

    TRANSIENT = "transient"  # Network hiccups, timeouts, server busy
    RATE_LIMITED = "rate_limited"  # Provider throttling
    PERMANENT = "permanent"  # Retrying cannot help


_RATE_LIMIT_MARKERS = ("rate limit", "quota", "too many requests", "throttl")
_AUTH_MARKERS = ("authenticationfailed", "invalid credentials", "authentication failed")


def is_rate_limited(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def classify_failure(exc: BaseException) -> FailureType:
    """Classify a handler failure.

    Exception types decide first; message patterns second; anything left is
    treated as transient.
    """
    if isinstance(exc, ReauthRequiredError):
        return FailureType.PERMANENT
    if isinstance(exc, TokenRefreshError):
        # Counted by the circuit breaker; a later attempt may still succeed
        return FailureType.TRANSIENT
    if isinstance(exc, (AdapterError, InvalidStateTransitionError, AccountNotFoundError)):
        return FailureType.PERMANENT
    if is_rate_limited(exc):
        return FailureType.RATE_LIMITED
    message = str(exc).lower()
    if any(marker in message for marker in _AUTH_MARKERS):
        return FailureType.PERMANENT
    return FailureType.TRANSIENT


class RetryPolicy(BaseModel):
    """Runtime policy for one job type.

    Attributes:
        job_type: Job this policy applies to
        queue: Named queue the job runs on
        max_attempts: Total attempts including the first
        backoff_seconds: Delay before retry N is ``backoff_seconds[N-1]``,
            the last entry repeating
        timeout_seconds: Hard limit for one attempt
        unique_for_seconds: Unique-dispatch lock TTL, None for no lock
        rate_limit_delay_seconds: Minimum delay after a rate-limited failure
        permanent_failures_no_retry: Skip retry for permanent failures
    """

    job_type: JobType
    queue: QueueName
    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_seconds: List[int] = Field(default_factory=lambda: [60])
    timeout_seconds: int = Field(default=300, ge=1, le=86400)
    unique_for_seconds: Optional[int] = Field(default=None, ge=1)
    rate_limit_delay_seconds: Optional[int] = Field(default=None, ge=1)
    permanent_failures_no_retry: bool = True

    def calculate_delay(self, attempt: int, failure_type: FailureType = FailureType.TRANSIENT) -> int:
        """Delay before the next attempt after ``attempt`` attempts have run."""
        if not self.backoff_seconds:
            delay = 0
        else:
            index = min(max(attempt, 1), len(self.backoff_seconds)) - 1
            delay = self.backoff_seconds[index]
        if failure_type == FailureType.RATE_LIMITED and self.rate_limit_delay_seconds:
            delay = max(delay, self.rate_limit_delay_seconds)
        return int(delay)

    def should_retry(self, attempt: int, failure_type: FailureType) -> bool:
        if failure_type == FailureType.PERMANENT and self.permanent_failures_no_retry:
            return False
        return attempt < self.max_attempts


class RetryPolicyRegistry:
    """Retry policies per job type."""

    DEFAULT_POLICIES: Dict[JobType, RetryPolicy] = {
        JobType.SEED: RetryPolicy(
            job_type=JobType.SEED,
            queue=QueueName.SYNC,
            max_attempts=3,
            backoff_seconds=[60],
            timeout_seconds=300,
        ),
        JobType.FORWARD: RetryPolicy(
            job_type=JobType.FORWARD,
            queue=QueueName.LIVE,
            max_attempts=5,
            backoff_seconds=[60, 300, 600, 1200],
            timeout_seconds=60,
            unique_for_seconds=120,
            rate_limit_delay_seconds=300,
        ),
        JobType.BACKFILL: RetryPolicy(
            job_type=JobType.BACKFILL,
            queue=QueueName.BACKFILL,
            max_attempts=5,
            backoff_seconds=[60, 300, 600, 1200],
            timeout_seconds=420,
            unique_for_seconds=300,
        ),
        JobType.FOLDER_SYNC: RetryPolicy(
            job_type=JobType.FOLDER_SYNC,
            queue=QueueName.SYNC,
            max_attempts=3,
            backoff_seconds=[60],
            timeout_seconds=300,
            unique_for_seconds=300,
        ),
        JobType.PRUNE: RetryPolicy(
            job_type=JobType.PRUNE,
            queue=QueueName.MAINTENANCE,
            max_attempts=1,
            backoff_seconds=[],
            timeout_seconds=600,
            unique_for_seconds=3600,
        ),
    }

    def __init__(self, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._policies = self.DEFAULT_POLICIES.copy()
        if overrides:
            self._apply_overrides(overrides)

    @classmethod
    def from_yaml(cls, config_path: Path) -> "RetryPolicyRegistry":
        """Load overrides from the ``retry_policies`` key of a YAML file.

        Raises:
            ValueError: If the file or a policy is invalid
        """
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML configuration: {exc}") from exc
        if not isinstance(config, dict):
            raise ValueError("Configuration must be a mapping")
        return cls(config.get("retry_policies") or {})

    def _apply_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> None:
        valid = [job_type.value for job_type in JobType]
        for key, values in overrides.items():
            if key not in valid:
                raise ValueError(f"Unknown job type '{key}'. Valid types: {valid}")
            job_type = JobType(key)
            merged = self._policies[job_type].model_dump()
            merged.update(dict(values))
            merged["job_type"] = job_type
            try:
                self._policies[job_type] = RetryPolicy(**merged)
            except ValidationError as exc:
                raise ValueError(f"Invalid retry policy for '{key}': {exc}") from exc

    def get_policy(self, job_type: JobType) -> RetryPolicy:
        return self._policies[job_type]

    def set_policy(self, policy: RetryPolicy) -> None:
        self._policies[policy.job_type] = policy

    def list_policies(self) -> Dict[JobType, RetryPolicy]:
        return self._policies.copy()


__all__ = [
    "FailureType",
    "RetryPolicy",
    "RetryPolicyRegistry",
    "classify_failure",
    "is_rate_limited",
]
