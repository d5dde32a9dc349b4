"""Domain models for mail accounts and their sync progress markers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """Supported mail provider families."""

    CUSTOM = "custom"  # Generic IMAP server
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    YAHOO = "yahoo"
    ICLOUD = "icloud"
    ZOHO = "zoho"
    FASTMAIL = "fastmail"
    YANDEX = "yandex"
    GMX = "gmx"
    WEBDE = "webde"


class AuthType(str, Enum):
    PASSWORD = "password"
    OAUTH = "oauth"


class Encryption(str, Enum):
    SSL = "ssl"  # Implicit TLS
    TLS = "tls"  # STARTTLS
    NONE = "none"


class FolderType(str, Enum):
    """Internal folder categories, independent of remote mailbox names."""

    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"

    @classmethod
    def priority_folders(cls) -> List["FolderType"]:
        """Folders seeded first so the user sees recent mail immediately."""
        return [cls.INBOX, cls.SENT, cls.DRAFTS, cls.TRASH]

    @classmethod
    def sync_order(cls) -> List["FolderType"]:
        """Order in which the full-sync walker visits folders."""
        return [cls.INBOX, cls.SENT, cls.DRAFTS, cls.ARCHIVE, cls.TRASH, cls.SPAM]

    @property
    def is_special(self) -> bool:
        return self is not FolderType.ARCHIVE


class SyncStatus(str, Enum):
    """Account sync lifecycle states."""

    PENDING = "pending"  # Created, seed not started
    SEEDING = "seeding"  # Fetching newest messages of priority folders
    SYNCING = "syncing"  # Full walk and backfill in progress
    COMPLETED = "completed"  # Initial import finished, crawlers keep polling
    FAILED = "failed"  # Halted until an operator intervenes


class SyncPhase(str, Enum):
    SEED = "seed"
    FULL = "full"


# Statuses in which the forward crawler keeps the live view current.
CRAWLABLE_STATUSES = frozenset({SyncStatus.SEEDING, SyncStatus.SYNCING, SyncStatus.COMPLETED})


# ---------------------------------------------------------------------------
# Legacy per-folder cursor
# ---------------------------------------------------------------------------


class FolderProgress(BaseModel):
    """Offset progress of the full-sync walker for one folder."""

    synced: int = Field(default=0, ge=0)
    total: Optional[int] = Field(default=None, ge=0, description="None until counted")
    priority: bool = False

    @property
    def is_done(self) -> bool:
        return self.total is not None and self.synced >= self.total

    @property
    def percent(self) -> float:
        if not self.total:
            return 100.0 if self.total == 0 else 0.0
        return round(min(100.0, self.synced / self.total * 100), 1)


class SyncCursor(BaseModel):
    """Structured cursor used by the seed phase and the full-sync walker."""

    phase: SyncPhase = SyncPhase.SEED
    folders: Dict[FolderType, FolderProgress] = Field(default_factory=dict)

    @classmethod
    def initial(cls) -> "SyncCursor":
        priority = set(FolderType.priority_folders())
        return cls(
            phase=SyncPhase.SEED,
            folders={
                folder: FolderProgress(priority=folder in priority)
                for folder in FolderType.sync_order()
            },
        )

    def progress_for(self, folder: FolderType) -> FolderProgress:
        return self.folders.get(folder) or FolderProgress()


# ---------------------------------------------------------------------------
# Provider presets
# ---------------------------------------------------------------------------


class ProviderPreset(BaseModel):
    """Connection defaults for a provider family."""

    imap_host: Optional[str] = None
    imap_port: int = 993
    imap_encryption: Encryption = Encryption.SSL
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_encryption: Encryption = Encryption.TLS
    supports_oauth: bool = False


PROVIDER_PRESETS: Dict[Provider, ProviderPreset] = {
    Provider.GMAIL: ProviderPreset(
        imap_host="imap.gmail.com",
        smtp_host="smtp.gmail.com",
        supports_oauth=True,
    ),
    Provider.OUTLOOK: ProviderPreset(
        imap_host="outlook.office365.com",
        smtp_host="smtp.office365.com",
        supports_oauth=True,
    ),
    Provider.YAHOO: ProviderPreset(
        imap_host="imap.mail.yahoo.com",
        smtp_host="smtp.mail.yahoo.com",
        smtp_port=465,
        smtp_encryption=Encryption.SSL,
        supports_oauth=True,
    ),
    Provider.ICLOUD: ProviderPreset(
        imap_host="imap.mail.me.com",
        smtp_host="smtp.mail.me.com",
    ),
    Provider.ZOHO: ProviderPreset(
        imap_host="imap.zoho.com",
        smtp_host="smtp.zoho.com",
        smtp_port=465,
        smtp_encryption=Encryption.SSL,
        supports_oauth=True,
    ),
    Provider.FASTMAIL: ProviderPreset(
        imap_host="imap.fastmail.com",
        smtp_host="smtp.fastmail.com",
        smtp_port=465,
        smtp_encryption=Encryption.SSL,
    ),
    Provider.YANDEX: ProviderPreset(
        imap_host="imap.yandex.com",
        smtp_host="smtp.yandex.com",
        smtp_port=465,
        smtp_encryption=Encryption.SSL,
        supports_oauth=True,
    ),
    Provider.GMX: ProviderPreset(
        imap_host="imap.gmx.com",
        smtp_host="mail.gmx.com",
    ),
    Provider.WEBDE: ProviderPreset(
        imap_host="imap.web.de",
        smtp_host="smtp.web.de",
    ),
    Provider.CUSTOM: ProviderPreset(),
}


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """One mailbox connection and its persisted sync state.

    The engine never writes this model back as a whole; every mutation goes
    through a field-level update in :class:`~mailsync.store.accounts.AccountStore`.
    """

    # Identity
    id: str
    email: str
    provider: Provider = Provider.CUSTOM
    auth_type: AuthType = AuthType.PASSWORD
    username: Optional[str] = None

    # Connection
    imap_host: Optional[str] = None
    imap_port: int = 993
    imap_encryption: Encryption = Encryption.SSL
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_encryption: Encryption = Encryption.TLS

    # Auth material
    password: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    is_active: bool = True
    is_verified: bool = False
    disabled_folders: List[FolderType] = Field(default_factory=list)

    # Sync state
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_cursor: SyncCursor = Field(default_factory=SyncCursor.initial)
    forward_uid_cursor: Optional[int] = Field(default=None, ge=0)
    backfill_uid_cursor: Optional[int] = Field(default=None, ge=0)
    backfill_complete: bool = False
    uid_epoch: int = Field(default=0, ge=0, description="Bumped whenever the UID cursors are reset")

    # Failure bookkeeping
    consecutive_failures: int = Field(default=0, ge=0)
    needs_reauth: bool = False
    sync_error: Optional[str] = None

    # Timestamps
    last_forward_sync_at: Optional[datetime] = None
    last_backfill_at: Optional[datetime] = None
    sync_started_at: Optional[datetime] = None
    initial_sync_completed_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_progress_at: Optional[datetime] = None  # Seed, walker or backfill moved forward
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    version: int = 0

    @field_validator(
        "token_expires_at",
        "last_forward_sync_at",
        "last_backfill_at",
        "sync_started_at",
        "initial_sync_completed_at",
        "last_sync_at",
        "last_progress_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _apply_preset(self) -> "Account":
        if self.imap_host is None:
            preset = PROVIDER_PRESETS[self.provider]
            self.imap_host = preset.imap_host
            self.smtp_host = self.smtp_host or preset.smtp_host
        return self

    @classmethod
    def from_preset(cls, *, id: str, email: str, provider: Provider, **fields) -> "Account":
        """Build an account with the provider's connection defaults."""
        preset = PROVIDER_PRESETS[provider]
        defaults = preset.model_dump(exclude={"supports_oauth"})
        defaults.update({key: value for key, value in fields.items() if value is not None})
        return cls(id=id, email=email, provider=provider, **defaults)

    @property
    def login_name(self) -> str:
        return self.username or self.email

    @property
    def last_error(self) -> Optional[str]:
        return self.sync_error

    @property
    def is_oauth(self) -> bool:
        return self.auth_type == AuthType.OAUTH

    def needs_token_refresh(self, buffer_seconds: int = 300, now: Optional[datetime] = None) -> bool:
        """True when an OAuth token is missing or expires within the buffer."""
        if not self.is_oauth:
            return False
        if not self.access_token or self.token_expires_at is None:
            return True
        now = now or utcnow()
        return self.token_expires_at - timedelta(seconds=buffer_seconds) <= now

    def is_folder_enabled(self, folder: FolderType) -> bool:
        return folder not in self.disabled_folders

    def can_run_forward_crawler(self) -> bool:
        return (
            self.is_active
            and self.is_verified
            and not self.needs_reauth
            and self.sync_status in CRAWLABLE_STATUSES
        )

    def can_run_backfill_crawler(self) -> bool:
        return (
            self.is_active
            and self.is_verified
            and not self.needs_reauth
            and not self.backfill_complete
        )

    def has_emails_ready(self) -> bool:
        return self.forward_uid_cursor is not None and self.forward_uid_cursor > 0

    def backfill_percent(self) -> float:
        """Rough share of UID history covered by the two cursors."""
        if self.backfill_complete:
            return 100.0
        if not self.forward_uid_cursor:
            return 0.0
        if self.backfill_uid_cursor is not None:
            covered = self.forward_uid_cursor - self.backfill_uid_cursor
            return round(min(100.0, covered / self.forward_uid_cursor * 100), 1)
        return 10.0


__all__ = [
    "Account",
    "AuthType",
    "CRAWLABLE_STATUSES",
    "Encryption",
    "FolderProgress",
    "FolderType",
    "PROVIDER_PRESETS",
    "Provider",
    "ProviderPreset",
    "SyncCursor",
    "SyncPhase",
    "SyncStatus",
    "utcnow",
]
