"""Single progress aggregate for an account's history import.

The UID cursors and the per-folder walker cursor are both read through
:func:`derive_progress`, which collapses them into one value. Completion is
decided from that value only, so the two trackers cannot disagree about
whether an account has finished importing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .models import Account, FolderType, SyncPhase, SyncStatus


@dataclass(frozen=True)
class Pending:
    kind: str = "pending"


@dataclass(frozen=True)
class Bootstrapping:
    """Seed phase running; nothing beyond the newest messages is known yet."""

    kind: str = "bootstrapping"


@dataclass(frozen=True)
class FullWalk:
    folder: FolderType
    offset: int
    total: Optional[int]
    kind: str = "full_walk"


@dataclass(frozen=True)
class Backfilling:
    cursor: Optional[int]
    kind: str = "backfilling"


@dataclass(frozen=True)
class Complete:
    kind: str = "complete"


SyncProgress = Union[Pending, Bootstrapping, FullWalk, Backfilling, Complete]


def walk_folders(account: Account) -> List[FolderType]:
    """Folders the full-sync walker visits, in order."""
    return [folder for folder in FolderType.sync_order() if account.is_folder_enabled(folder)]


def unfinished_folders(account: Account) -> List[FolderType]:
    return [
        folder
        for folder in walk_folders(account)
        if not account.sync_cursor.progress_for(folder).is_done
    ]


def derive_progress(account: Account) -> SyncProgress:
    """Collapse the account's cursors into one progress value."""
    if account.sync_status == SyncStatus.PENDING:
        return Pending()
    if account.sync_status == SyncStatus.COMPLETED:
        return Complete()
    if account.sync_status == SyncStatus.SEEDING or account.sync_cursor.phase == SyncPhase.SEED:
        return Bootstrapping()
    remaining = unfinished_folders(account)
    if remaining:
        progress = account.sync_cursor.progress_for(remaining[0])
        return FullWalk(folder=remaining[0], offset=progress.synced, total=progress.total)
    if not account.backfill_complete:
        return Backfilling(cursor=account.backfill_uid_cursor)
    return Complete()


def is_complete(account: Account) -> bool:
    return isinstance(derive_progress(account), Complete)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


class FolderProgressReport(BaseModel):
    synced: int
    total: Optional[int]
    percent: float


class SyncProgressReport(BaseModel):
    """Progress snapshot returned by ``get_sync_progress``."""

    account_id: str
    status: SyncStatus
    phase: str
    current_folder: Optional[FolderType] = None
    folders: Dict[FolderType, FolderProgressReport] = Field(default_factory=dict)
    overall_percent: float = 0.0
    total_synced: int = 0
    total_messages: int = 0
    stored_messages: int = 0
    forward_cursor: Optional[int] = None
    backfill_cursor: Optional[int] = None
    backfill_complete: bool = False
    backfill_percent: float = 0.0
    can_use_email: bool = False
    needs_reauth: bool = False
    sync_error: Optional[str] = None
    sync_started_at: Optional[datetime] = None
    initial_sync_completed_at: Optional[datetime] = None
    last_forward_sync_at: Optional[datetime] = None
    last_backfill_at: Optional[datetime] = None


def build_report(account: Account, stored_messages: int = 0) -> SyncProgressReport:
    progress = derive_progress(account)
    folders = {
        folder: FolderProgressReport(
            synced=account.sync_cursor.progress_for(folder).synced,
            total=account.sync_cursor.progress_for(folder).total,
            percent=account.sync_cursor.progress_for(folder).percent,
        )
        for folder in walk_folders(account)
    }
    total_synced = sum(item.synced for item in folders.values())
    total_messages = sum(item.total or 0 for item in folders.values())
    walk_percent = min(100.0, total_synced / total_messages * 100) if total_messages else 0.0
    backfill_percent = account.backfill_percent()

    if isinstance(progress, Complete):
        overall = 100.0
    elif isinstance(progress, Pending):
        overall = 0.0
    else:
        # Equal weight per tracker
        overall = round((walk_percent + backfill_percent) / 2, 1)

    return SyncProgressReport(
        account_id=account.id,
        status=account.sync_status,
        phase=progress.kind,
        current_folder=progress.folder if isinstance(progress, FullWalk) else None,
        folders=folders,
        overall_percent=overall,
        total_synced=total_synced,
        total_messages=total_messages,
        stored_messages=stored_messages,
        forward_cursor=account.forward_uid_cursor,
        backfill_cursor=account.backfill_uid_cursor,
        backfill_complete=account.backfill_complete,
        backfill_percent=backfill_percent,
        can_use_email=account.has_emails_ready(),
        needs_reauth=account.needs_reauth,
        sync_error=account.sync_error,
        sync_started_at=account.sync_started_at,
        initial_sync_completed_at=account.initial_sync_completed_at,
        last_forward_sync_at=account.last_forward_sync_at,
        last_backfill_at=account.last_backfill_at,
    )


__all__ = [
    "Backfilling",
    "Bootstrapping",
    "Complete",
    "FolderProgressReport",
    "FullWalk",
    "Pending",
    "SyncProgress",
    "SyncProgressReport",
    "build_report",
    "derive_progress",
    "is_complete",
    "unfinished_folders",
    "walk_folders",
]
