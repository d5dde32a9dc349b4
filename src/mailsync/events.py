"""Status change notifications for external listeners."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .models import SyncStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncStatusChanged:
    """Emitted whenever an account's sync status or re-auth flag changes."""

    account_id: str
    old_status: SyncStatus
    new_status: SyncStatus
    needs_reauth: bool = False
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "account_id": self.account_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "needs_reauth": self.needs_reauth,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error:
            payload["error"] = self.error
        return payload


Listener = Callable[[SyncStatusChanged], None]


class EventDispatcher:
    """Fans events out to registered listeners.

    A failing listener is logged and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def emit(self, event: SyncStatusChanged) -> None:
        logger.info(
            "Sync status changed",
            extra={
                "account_id": event.account_id,
                "old_status": event.old_status.value,
                "new_status": event.new_status.value,
                "needs_reauth": event.needs_reauth,
            },
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Status change listener failed",
                    extra={"account_id": event.account_id},
                )


__all__ = ["EventDispatcher", "Listener", "SyncStatusChanged"]
