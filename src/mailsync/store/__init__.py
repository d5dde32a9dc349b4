"""Persistence for accounts, messages and the sync log."""

from .accounts import AccountStore
from .messages import MessageStore, StoreOutcome
from .sync_log import SyncLog, SyncLogEntry

__all__ = ["AccountStore", "MessageStore", "StoreOutcome", "SyncLog", "SyncLogEntry"]
