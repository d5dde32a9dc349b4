"""Exception taxonomy for the mail synchronization engine."""

from __future__ import annotations


class MailSyncError(Exception):
    """Base class for all engine errors."""


class InvalidStateTransitionError(MailSyncError, ValueError):
    """Raised when a sync status change is not allowed.

    The allowed moves are defined in ``VALID_TRANSITIONS``. Leaving
    ``failed`` is reserved for explicit operator actions (re-authentication
    or reset) and is rejected when the engine attempts it on its own.

    Example:
        Moving an account from ``completed`` back to ``seeding`` raises
        this exception.
    """


class StateTransitionRaceError(MailSyncError, RuntimeError):
    """Raised when an optimistic account update loses a race.

    The account row changed between the time it was read and the time a
    conditional update was issued (the ``WHERE sync_status = ?`` or
    ``WHERE version = ?`` guard matched no row).
    """


class AccountNotFoundError(MailSyncError, KeyError):
    """Raised when an account id is not present in the account store."""


class FolderNotFoundError(MailSyncError):
    """Raised when none of a folder's candidate mailbox names exist remotely."""


class AdapterError(MailSyncError):
    """Unrecoverable provider adapter failure.

    Transport errors are retried by the adapter and the job runtime; this
    error marks failures that retrying cannot fix, such as rejected
    credentials or an unsupported connection setup.
    """


class TokenRefreshError(AdapterError):
    """Raised when an OAuth access token could not be refreshed."""


class ReauthRequiredError(TokenRefreshError):
    """Raised when the refresh circuit breaker is open for an account."""


class ConfigurationError(MailSyncError):
    """Raised when the configuration file is invalid."""


class UnknownProviderError(MailSyncError, LookupError):
    """Raised when no adapter is registered for a provider."""


__all__ = [
    "AccountNotFoundError",
    "AdapterError",
    "ConfigurationError",
    "FolderNotFoundError",
    "InvalidStateTransitionError",
    "MailSyncError",
    "ReauthRequiredError",
    "StateTransitionRaceError",
    "TokenRefreshError",
    "UnknownProviderError",
]
