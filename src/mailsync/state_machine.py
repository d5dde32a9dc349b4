"""Account sync status state machine.

The engine moves accounts forward through ``pending -> seeding -> syncing ->
completed`` and may drop them into ``failed`` from any of those states. Only
an operator action (re-authentication or reset) brings an account back to
``pending``; those moves are validated with ``operator=True``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

from .exceptions import InvalidStateTransitionError
from .models import SyncStatus, utcnow

logger = logging.getLogger(__name__)


# Moves the engine may perform on its own
VALID_TRANSITIONS: Dict[SyncStatus, Set[SyncStatus]] = {
    SyncStatus.PENDING: {
        SyncStatus.SEEDING,  # Seed dispatched
        SyncStatus.FAILED,
    },
    SyncStatus.SEEDING: {
        SyncStatus.SYNCING,  # Priority folders seeded
        SyncStatus.COMPLETED,
        SyncStatus.FAILED,
    },
    SyncStatus.SYNCING: {
        SyncStatus.COMPLETED,  # History imported
        SyncStatus.FAILED,
    },
    SyncStatus.COMPLETED: {
        SyncStatus.FAILED,  # Crawlers keep running after completion
    },
    SyncStatus.FAILED: set(),
}

# Moves reserved for re-authentication and reset
OPERATOR_TRANSITIONS: Dict[SyncStatus, Set[SyncStatus]] = {
    status: {SyncStatus.PENDING} for status in SyncStatus
}


@dataclass
class StatusTransition:
    """Records one requested status change."""

    account_id: str
    from_status: SyncStatus
    to_status: SyncStatus
    timestamp: datetime = field(default_factory=utcnow)
    operator: bool = False
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_idempotent(self) -> bool:
        return self.from_status == self.to_status

    def is_valid(self) -> bool:
        if self.is_idempotent():
            return True
        allowed = set(VALID_TRANSITIONS.get(self.from_status, set()))
        if self.operator:
            allowed |= OPERATOR_TRANSITIONS.get(self.from_status, set())
        return self.to_status in allowed


def validate_transition(
    account_id: str,
    from_status: SyncStatus,
    to_status: SyncStatus,
    *,
    operator: bool = False,
    reason: Optional[str] = None,
) -> StatusTransition:
    """Validate a status change before it is written.

    Args:
        account_id: Account identifier
        from_status: Status currently stored
        to_status: Requested status
        operator: True for re-authentication and reset actions
        reason: Optional human readable reason

    Returns:
        The validated transition

    Raises:
        InvalidStateTransitionError: If the move is not allowed
    """
    transition = StatusTransition(
        account_id=account_id,
        from_status=from_status,
        to_status=to_status,
        operator=operator,
        reason=reason,
    )
    if not transition.is_valid():
        allowed = sorted(status.value for status in VALID_TRANSITIONS.get(from_status, set()))
        logger.error(
            "Invalid sync status transition",
            extra={
                "account_id": account_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "allowed": allowed,
            },
        )
        raise InvalidStateTransitionError(
            f"Invalid transition for account {account_id}: "
            f"{from_status.value} -> {to_status.value}. Allowed: {allowed}"
        )
    if transition.is_idempotent():
        logger.debug(
            "Idempotent status transition",
            extra={"account_id": account_id, "status": to_status.value},
        )
    return transition


__all__ = [
    "OPERATOR_TRANSITIONS",
    "StatusTransition",
    "VALID_TRANSITIONS",
    "validate_transition",
]
