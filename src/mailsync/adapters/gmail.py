"""Gmail adapter.

Gmail exposes one "All Mail" mailbox with labels instead of real folders.
Inbox, Sent and Drafts are served as ``X-GM-RAW`` views over All Mail, so
every message of those views shares the All Mail UID space, and a fetched
message is filed by its labels rather than by the mailbox it came from.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from ..models import FolderType, Provider
from .base import ProviderAdapter
from .parser import RawMessage

# Checked in this order; the first label present wins
LABEL_PRIORITY = (
    ("\\inbox", FolderType.INBOX),
    ("\\sent", FolderType.SENT),
    ("\\draft", FolderType.DRAFTS),
    ("\\trash", FolderType.TRASH),
    ("\\spam", FolderType.SPAM),
)

VIEW_QUERIES: Dict[FolderType, str] = {
    FolderType.INBOX: "in:inbox",
    FolderType.SENT: "in:sent",
    FolderType.DRAFTS: "in:drafts",
}


def normalize_label(label: str) -> str:
    return label.strip().strip('"').strip().lower()


def classify_labels(labels: Iterable[str], mailbox_path: Optional[str] = None) -> FolderType:
    """Folder for a message carrying ``labels``.

    Without a recognised system label, a path mentioning "inbox" files the
    message under inbox and anything else under archive.
    """
    normalized = {normalize_label(label) for label in labels}
    for label, folder in LABEL_PRIORITY:
        if label in normalized:
            return folder
    if mailbox_path and "inbox" in mailbox_path.lower():
        return FolderType.INBOX
    return FolderType.ARCHIVE


class GmailAdapter(ProviderAdapter):
    provider = Provider.GMAIL
    oauth_capable = True

    def mailbox_for(self, folder: FolderType) -> FolderType:
        if folder in VIEW_QUERIES:
            return FolderType.ARCHIVE
        return folder

    def view_criteria(self, folder: FolderType) -> List[Any]:
        query = VIEW_QUERIES.get(folder)
        return ["X-GM-RAW", query] if query else []

    def extra_fetch_items(self) -> List[str]:
        return ["X-GM-LABELS", "X-GM-THRID"]

    def forward_folders(self) -> List[FolderType]:
        return [FolderType.ARCHIVE]

    def backfill_folder(self) -> FolderType:
        return FolderType.ARCHIVE

    def classify_folder(self, raw: RawMessage) -> FolderType:
        # Trash and spam are real mailboxes; their contents carry no such label
        if raw.source_folder in (FolderType.TRASH, FolderType.SPAM):
            return raw.source_folder
        return classify_labels(raw.labels, raw.mailbox)


__all__ = ["GmailAdapter", "LABEL_PRIORITY", "VIEW_QUERIES", "classify_labels", "normalize_label"]
