"""Collaborators shared by the seed runner, the crawlers and the orchestrator."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..adapters.base import ProviderAdapter
from ..adapters.parser import ParsedMessage
from ..config import MailSyncConfig
from ..events import EventDispatcher
from ..models import Account, Provider
from ..store.accounts import AccountStore
from ..store.messages import MessageStore, StoreOutcome
from ..store.sync_log import SyncLog

logger = logging.getLogger(__name__)


class BatchResult(BaseModel):
    """Outcome of storing one batch of fetched messages."""

    fetched: int = Field(default=0, ge=0)
    inserted: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    uids: List[int] = Field(default_factory=list, description="UIDs handed to the store")

    @property
    def stored(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            fetched=self.fetched + other.fetched,
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            uids=[*self.uids, *other.uids],
        )


def store_batch(
    messages: MessageStore, account_id: str, parsed: Sequence[ParsedMessage]
) -> BatchResult:
    """Store each message, logging and skipping the ones the store rejects."""
    result = BatchResult(fetched=len(parsed))
    for message in parsed:
        result.uids.append(message.uid)
        try:
            outcome = messages.store(account_id, message)
        except Exception as exc:  # noqa: BLE001
            result.errors += 1
            logger.warning(
                "Failed to store message",
                extra={
                    "account_id": account_id,
                    "folder": message.folder.value,
                    "uid": message.uid,
                    "error": str(exc),
                },
            )
            continue
        if outcome == StoreOutcome.INSERTED:
            result.inserted += 1
        elif outcome == StoreOutcome.UPDATED:
            result.updated += 1
        else:
            result.skipped += 1
    return result


AdapterFactory = Callable[[Provider], ProviderAdapter]


@dataclass
class SyncServices:
    """Stores, configuration and adapters used by every sync component.

    Adapters are created lazily, one per provider family, and shared by all
    accounts of that family.
    """

    accounts: AccountStore
    messages: MessageStore
    sync_log: SyncLog
    events: EventDispatcher
    adapter_factory: AdapterFactory
    config: MailSyncConfig = field(default_factory=MailSyncConfig)
    _adapters: Dict[Provider, ProviderAdapter] = field(default_factory=dict, repr=False)
    _adapter_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def adapter_for(self, account: Account) -> ProviderAdapter:
        with self._adapter_lock:
            adapter = self._adapters.get(account.provider)
            if adapter is None:
                adapter = self.adapter_factory(account.provider)
                self._adapters[account.provider] = adapter
        return adapter

    def find_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.find(account_id)


__all__ = ["AdapterFactory", "BatchResult", "SyncServices", "store_batch"]
