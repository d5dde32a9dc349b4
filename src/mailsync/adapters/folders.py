"""Remote mailbox names per provider, primary name first."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ..models import FolderType, Provider

FolderMap = Dict[FolderType, List[str]]

_STANDARD: FolderMap = {
    FolderType.INBOX: ["INBOX"],
    FolderType.SENT: ["Sent", "Sent Items", "Sent Messages"],
    FolderType.DRAFTS: ["Drafts", "Draft"],
    FolderType.TRASH: ["Trash", "Deleted Items", "Deleted Messages"],
    FolderType.SPAM: ["Spam", "Junk", "Junk Email"],
    FolderType.ARCHIVE: ["Archive", "Archives"],
}

FOLDER_MAPS: Dict[Provider, FolderMap] = {
    Provider.GMAIL: {
        FolderType.INBOX: ["INBOX"],
        FolderType.SENT: ["[Gmail]/Sent Mail", "[Google Mail]/Sent Mail", "Sent", "Sent Messages"],
        FolderType.DRAFTS: ["[Gmail]/Drafts", "[Google Mail]/Drafts", "Drafts"],
        FolderType.TRASH: ["[Gmail]/Trash", "[Google Mail]/Trash", "[Gmail]/Bin", "Trash"],
        FolderType.SPAM: ["[Gmail]/Spam", "[Google Mail]/Spam", "Spam"],
        FolderType.ARCHIVE: ["[Gmail]/All Mail", "[Google Mail]/All Mail", "All Mail"],
    },
    Provider.OUTLOOK: {
        FolderType.INBOX: ["INBOX"],
        FolderType.SENT: ["Sent Items", "Sent"],
        FolderType.DRAFTS: ["Drafts"],
        FolderType.TRASH: ["Deleted Items", "Trash"],
        FolderType.SPAM: ["Junk Email", "Junk", "Spam"],
        FolderType.ARCHIVE: ["Archive"],
    },
    Provider.YAHOO: {
        FolderType.INBOX: ["INBOX"],
        FolderType.SENT: ["Sent"],
        FolderType.DRAFTS: ["Draft", "Drafts"],
        FolderType.TRASH: ["Trash"],
        FolderType.SPAM: ["Bulk Mail", "Spam"],
        FolderType.ARCHIVE: ["Archive"],
    },
    Provider.ICLOUD: {
        FolderType.INBOX: ["INBOX"],
        FolderType.SENT: ["Sent Messages", "Sent"],
        FolderType.DRAFTS: ["Drafts"],
        FolderType.TRASH: ["Deleted Messages", "Trash"],
        FolderType.SPAM: ["Junk"],
        FolderType.ARCHIVE: ["Archive"],
    },
    Provider.ZOHO: {
        FolderType.INBOX: ["INBOX"],
        FolderType.SENT: ["Sent"],
        FolderType.DRAFTS: ["Drafts"],
        FolderType.TRASH: ["Trash"],
        FolderType.SPAM: ["Spam"],
        FolderType.ARCHIVE: ["Archives", "Archive"],
    },
    Provider.CUSTOM: _STANDARD,
    Provider.FASTMAIL: _STANDARD,
    Provider.YANDEX: _STANDARD,
    Provider.GMX: _STANDARD,
    Provider.WEBDE: _STANDARD,
}


def folder_candidates(provider: Provider, folder: FolderType) -> List[str]:
    """Candidate remote names for ``folder``; falls back to the upper-cased type."""
    candidates = FOLDER_MAPS.get(provider, _STANDARD).get(folder)
    return list(candidates) if candidates else [folder.value.upper()]


def primary_folder_name(provider: Provider, folder: FolderType) -> str:
    return folder_candidates(provider, folder)[0]


def pick_mailbox(candidates: Iterable[str], available: Iterable[str]) -> Optional[str]:
    """First candidate the server actually lists.

    ``INBOX`` is matched case-insensitively as RFC 3501 requires; other names
    must match exactly, but the server's spelling is returned either way.
    """
    listed = list(available)
    exact = set(listed)
    folded = {name.upper(): name for name in listed}
    for candidate in candidates:
        if candidate in exact:
            return candidate
        if candidate.upper() == "INBOX" and "INBOX" in folded:
            return folded["INBOX"]
    return None


__all__ = [
    "FOLDER_MAPS",
    "FolderMap",
    "folder_candidates",
    "pick_mailbox",
    "primary_folder_name",
]
