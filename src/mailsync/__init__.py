"""Resumable IMAP mailbox synchronization engine."""

from .config import ConfigurationManager, MailSyncConfig
from .exceptions import MailSyncError
from .models import Account, AuthType, FolderType, Provider, SyncCursor, SyncStatus
from .progress import SyncProgressReport, build_report
from .runtime import MailSyncEngine, build_engine

__version__ = "0.1.0"

__all__ = [
    "Account",
    "AuthType",
    "ConfigurationManager",
    "FolderType",
    "MailSyncConfig",
    "MailSyncEngine",
    "MailSyncError",
    "Provider",
    "SyncCursor",
    "SyncProgressReport",
    "SyncStatus",
    "build_engine",
    "build_report",
]
