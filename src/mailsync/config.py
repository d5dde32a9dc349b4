"""Engine configuration with pydantic validation and YAML persistence."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from croniter import croniter
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".mailsync"
CONFIG_ENV_VAR = "MAILSYNC_CONFIG"


class StorageConfig(BaseModel):
    """Database locations."""

    database_path: Path = Field(
        default=DEFAULT_HOME / "mailsync.db",
        description="Accounts, messages and sync log",
    )
    queue_path: Path = Field(default=DEFAULT_HOME / "queue.db", description="Job queue")

    @field_validator("database_path", "queue_path")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return Path(value).expanduser()


class SyncConfig(BaseModel):
    """Batch sizes and self-dispatch delays of the crawlers.

    Attributes:
        seed_count: Newest messages fetched per priority folder during seed
        chunk_size: Messages per full-sync walker invocation
        preview_length: Characters kept in the message preview
        forward_bootstrap_count: UIDs stored when the forward cursor is first set
        forward_batch_limit: New UIDs handled per forward crawl
        backfill_batch_size: Messages per backfill invocation
        backfill_window: UID range inspected below the backfill cursor
    """

    seed_count: int = Field(default=50, ge=1, le=1000)
    chunk_size: int = Field(default=100, ge=1, le=1000)
    preview_length: int = Field(default=200, ge=0, le=2000)
    forward_bootstrap_count: int = Field(default=50, ge=1, le=1000)
    forward_batch_limit: int = Field(default=100, ge=1, le=1000)
    backfill_batch_size: int = Field(default=50, ge=1, le=1000)
    backfill_window: int = Field(default=100, ge=1, le=10000)
    backfill_delay_seconds: int = Field(default=5, ge=0)
    backfill_start_delay_seconds: int = Field(default=10, ge=0)
    folder_chunk_delay_seconds: int = Field(default=2, ge=0)
    skip_attachment_content: bool = True


class OAuthProviderConfig(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    token_endpoint: Optional[str] = None


class OAuthConfig(BaseModel):
    """Token refresh and circuit breaker settings."""

    token_refresh_buffer_seconds: int = Field(default=300, ge=0, le=3600)
    circuit_breaker_threshold: int = Field(default=3, ge=1, le=20)
    request_timeout_seconds: int = Field(default=15, ge=1, le=120)
    providers: Dict[str, OAuthProviderConfig] = Field(default_factory=dict)


class ImapConfig(BaseModel):
    """Connection and network retry settings."""

    connection_timeout_seconds: int = Field(default=30, ge=1, le=600)
    network_retries: int = Field(default=3, ge=1, le=10)
    network_retry_base_delay: float = Field(default=1.0, ge=0.0, le=60.0)
    max_parallel_folders: Dict[str, int] = Field(
        default_factory=lambda: {"gmail": 2, "outlook": 2, "custom": 3, "default": 2}
    )

    def parallel_folders_for(self, provider: str) -> int:
        limits = self.max_parallel_folders
        return max(1, int(limits.get(provider, limits.get("default", 2))))


class WorkerConfig(BaseModel):
    """Per-queue concurrency of the job worker."""

    live_concurrency: int = Field(default=4, ge=1, le=64)
    backfill_concurrency: int = Field(default=2, ge=1, le=64)
    default_concurrency: int = Field(default=2, ge=1, le=64)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0, le=60.0)


class SchedulerConfig(BaseModel):
    """Periodic ticks."""

    forward_interval_minutes: int = Field(default=2, ge=1, le=1440)
    watchdog_interval_minutes: int = Field(default=1, ge=1, le=1440)
    stuck_after_minutes: int = Field(default=15, ge=1, le=10080)
    prune_cron: str = Field(default="0 3 * * *")

    @field_validator("prune_cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value}")
        return value


class RetentionConfig(BaseModel):
    trash_days: int = Field(default=30, ge=1)
    body_days: int = Field(default=90, ge=1)
    sync_log_days: int = Field(default=7, ge=1)


class MailSyncConfig(BaseModel):
    """Top-level configuration.

    Attributes:
        version: Configuration schema version
        storage: Database locations
        sync: Crawler batch sizes and delays
        oauth: Token refresh settings
        imap: Connection settings
        workers: Job worker concurrency
        scheduler: Periodic ticks
        retention: Pruning windows
        retry_policies: Per job type overrides of the default retry policies
    """

    version: int = Field(default=1)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    retry_policies: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    model_config = {"validate_assignment": True, "extra": "forbid"}


def default_config_path() -> Path:
    env_value = os.getenv(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()
    return DEFAULT_HOME / "config.yaml"


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


class ConfigurationManager:
    """Loads, saves and validates the YAML configuration file."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self._config_path = Path(config_path) if config_path else default_config_path()
        self._config: Optional[MailSyncConfig] = None

    @property
    def path(self) -> Path:
        return self._config_path

    def load(self) -> MailSyncConfig:
        """Load and validate configuration.

        A missing file yields the defaults.

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation
        """
        if not self._config_path.exists():
            logger.debug(
                "Configuration file not found, using defaults",
                extra={"config_path": str(self._config_path)},
            )
            self._config = MailSyncConfig()
            return self._config

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {self._config_path}: {exc}") from exc

        try:
            self._config = MailSyncConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(_format_errors(exc))}"
            ) from exc
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc
        return self._config

    def save(self, config: MailSyncConfig) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without keeping it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            MailSyncConfig(**data)
        except ValidationError as exc:
            return _format_errors(exc)
        except (yaml.YAMLError, TypeError) as exc:
            return [f"Failed to load configuration: {exc}"]
        return []


__all__ = [
    "ConfigurationManager",
    "ImapConfig",
    "MailSyncConfig",
    "OAuthConfig",
    "OAuthProviderConfig",
    "RetentionConfig",
    "SchedulerConfig",
    "StorageConfig",
    "SyncConfig",
    "WorkerConfig",
    "default_config_path",
]
