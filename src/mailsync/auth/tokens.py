"""OAuth access token lifecycle with a per-account circuit breaker.

Every adapter connection for an OAuth account first asks
:meth:`TokenLifecycle.refresh_if_needed` for a usable token. Refresh failures
are counted on the account row; once the count reaches the configured
threshold the breaker trips: the account is failed with ``needs_reauth`` set
and stays that way until the user re-authenticates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from os import getenv
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import requests
from pydantic import BaseModel, Field

from ..config import OAuthConfig
from ..events import EventDispatcher, SyncStatusChanged
from ..exceptions import ReauthRequiredError, StateTransitionRaceError, TokenRefreshError
from ..models import Account, SyncStatus, utcnow
from ..store.accounts import AccountStore
from ..store.sync_log import SyncLog

logger = logging.getLogger(__name__)

REAUTH_MESSAGE = "Authentication failed. Please reconnect your account."


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


class OAuthProvider(BaseModel):
    """Token endpoint and client credentials for one provider."""

    name: str
    token_endpoint: str
    client_id: str = ""
    client_secret: Optional[str] = None


class TokenGrant(BaseModel):
    """Successful refresh response."""

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int = Field(default=3600, ge=0)

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.expires_in)


def _default_providers() -> Iterable[OAuthProvider]:
    endpoints = {
        "gmail": "https://oauth2.googleapis.com/token",
        "outlook": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "yahoo": "https://api.login.yahoo.com/oauth2/get_token",
        "zoho": "https://accounts.zoho.com/oauth/v2/token",
        "yandex": "https://oauth.yandex.com/token",
    }
    return [
        OAuthProvider(
            name=name,
            token_endpoint=endpoint,
            client_id=getenv(f"MAILSYNC_{name.upper()}_CLIENT_ID", ""),
            client_secret=getenv(f"MAILSYNC_{name.upper()}_CLIENT_SECRET"),
        )
        for name, endpoint in endpoints.items()
    ]


class OAuthProviderRegistry:
    """Registry of OAuth providers able to refresh IMAP access tokens."""

    def __init__(
        self,
        providers: Optional[Iterable[OAuthProvider]] = None,
        *,
        timeout: int = 15,
    ) -> None:
        self._providers = {provider.name: provider for provider in (providers or _default_providers())}
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: OAuthConfig) -> "OAuthProviderRegistry":
        """Defaults from the environment, overridden per provider by the config file."""
        registry = cls(timeout=config.request_timeout_seconds)
        for name, override in config.providers.items():
            base = registry._providers.get(name)
            if base is None and not override.token_endpoint:
                logger.warning("OAuth provider override without token endpoint", extra={"provider": name})
                continue
            fields = override.model_dump(exclude_none=True)
            if base is None:
                registry.register(OAuthProvider(name=name, **fields))
            else:
                registry.register(base.model_copy(update=fields))
        return registry

    def get_provider(self, name: str) -> OAuthProvider:
        try:
            return self._providers[name]
        except KeyError as exc:
            raise TokenRefreshError(f"Unknown OAuth provider: {name}") from exc

    def register(self, provider: OAuthProvider) -> None:
        self._providers[provider.name] = provider

    def refresh_access_token(self, *, provider: OAuthProvider, refresh_token: str) -> TokenGrant:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": provider.client_id,
        }
        if provider.client_secret:
            data["client_secret"] = provider.client_secret
        payload = self._post(provider.token_endpoint, data=data)
        if not payload.get("access_token"):
            raise TokenRefreshError(f"{provider.name} returned no access token")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type", "Bearer"),
            expires_in=int(payload.get("expires_in") or 3600),
        )

    def _post(self, url: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = requests.post(url, data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TokenRefreshError(f"OAuth token request failed: {exc}") from exc
        if resp.status_code != 200:
            raise TokenRefreshError(f"OAuth provider returned {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise TokenRefreshError("OAuth provider returned a non-JSON response") from exc


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TokenLifecycle:
    """Refresh-before-use policy and circuit breaker.

    Args:
        accounts: Account store holding tokens and the failure counter
        sync_log: Audit log receiving ``needs_reauth`` entries
        events: Dispatcher notified when the breaker trips
        registry: OAuth providers
        config: Refresh buffer and breaker threshold
    """

    def __init__(
        self,
        accounts: AccountStore,
        sync_log: SyncLog,
        events: EventDispatcher,
        registry: OAuthProviderRegistry,
        config: Optional[OAuthConfig] = None,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.accounts = accounts
        self.sync_log = sync_log
        self.events = events
        self.registry = registry
        self.config = config or OAuthConfig()
        self._now = now

    def needs_refresh(self, account: Account) -> bool:
        return account.needs_token_refresh(self.config.token_refresh_buffer_seconds, now=self._now())

    def refresh_if_needed(self, account: Account) -> Account:
        """Return ``account`` with a token valid beyond the refresh buffer.

        Raises:
            ReauthRequiredError: If the breaker is open or trips on this attempt
            TokenRefreshError: If the refresh failed below the threshold
        """
        account, _refreshed = self.ensure_fresh(account)
        return account

    def ensure_fresh(self, account: Account) -> Tuple[Account, bool]:
        """Like :meth:`refresh_if_needed`, also reporting whether a refresh ran."""
        if not account.is_oauth:
            return account, False
        if account.needs_reauth:
            raise ReauthRequiredError(f"Account {account.id} requires re-authentication")
        if not self.needs_refresh(account):
            return account, False
        return self.refresh(account), True

    def refresh(self, account: Account) -> Account:
        try:
            if not account.refresh_token:
                raise TokenRefreshError(f"Account {account.id} has no refresh token")
            provider = self.registry.get_provider(account.provider.value)
            grant = self.registry.refresh_access_token(provider=provider, refresh_token=account.refresh_token)
        except TokenRefreshError as exc:
            raise self._record_failure(account, exc) from exc

        updated = self.accounts.record_token_success(
            account.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(self._now()),
        )
        logger.info("Access token refreshed", extra={"account_id": account.id})
        return updated

    def _record_failure(self, account: Account, exc: Exception) -> TokenRefreshError:
        """Count the failure and return the error to raise, tripping the breaker at the threshold."""
        failures = self.accounts.record_token_failure(account.id, str(exc))
        threshold = self.config.circuit_breaker_threshold
        logger.warning(
            "Token refresh failed",
            extra={"account_id": account.id, "attempt": failures, "threshold": threshold, "error": str(exc)},
        )
        if failures >= threshold:
            self.trip(account.id, failures=failures, error=str(exc))
            return ReauthRequiredError(f"Account {account.id} requires re-authentication")
        return TokenRefreshError(f"Token refresh failed for account {account.id}: {exc}")

    def trip(self, account_id: str, *, failures: int, error: str) -> Account:
        """Open the breaker: fail the account and flag it for re-authentication."""
        for _ in range(3):
            current = self.accounts.get(account_id)
            try:
                if current.sync_status == SyncStatus.FAILED:
                    updated = self.accounts.update_fields(
                        account_id, needs_reauth=True, sync_error=REAUTH_MESSAGE
                    )
                else:
                    updated = self.accounts.transition_status(
                        account_id,
                        SyncStatus.FAILED,
                        from_status=current.sync_status,
                        reason="token refresh circuit breaker",
                        needs_reauth=True,
                        sync_error=REAUTH_MESSAGE,
                    )
            except StateTransitionRaceError:
                continue
            break
        else:
            raise StateTransitionRaceError(f"Could not flag account {account_id} for re-authentication")

        logger.error(
            "Token circuit breaker tripped",
            extra={"account_id": account_id, "attempt": failures, "error": error},
        )
        self.sync_log.record(account_id, "needs_reauth", {"failures": failures, "error": error})
        self.events.emit(
            SyncStatusChanged(
                account_id=account_id,
                old_status=current.sync_status,
                new_status=SyncStatus.FAILED,
                needs_reauth=True,
                error=REAUTH_MESSAGE,
            )
        )
        return updated

    def store_new_tokens(
        self,
        account_id: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: int = 3600,
    ) -> Account:
        """Store tokens from a fresh user authorization and close the breaker."""
        grant = TokenGrant(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in)
        return self.accounts.record_token_success(
            account_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(self._now()),
        )


__all__ = [
    "OAuthProvider",
    "OAuthProviderRegistry",
    "REAUTH_MESSAGE",
    "TokenGrant",
    "TokenLifecycle",
]
