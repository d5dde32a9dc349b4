"""Tests for OAuth token refresh and the re-authentication circuit breaker."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from mailsync.adapters.gmail import GmailAdapter
from mailsync.auth.tokens import (
    REAUTH_MESSAGE,
    OAuthProvider,
    OAuthProviderRegistry,
    TokenGrant,
    TokenLifecycle,
)
from mailsync.config import OAuthConfig, OAuthProviderConfig
from mailsync.events import EventDispatcher
from mailsync.exceptions import ReauthRequiredError, TokenRefreshError
from mailsync.models import Account, AuthType, Provider, SyncStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def registry() -> Mock:
    registry = Mock(spec=OAuthProviderRegistry)
    registry.get_provider.return_value = OAuthProvider(name="gmail", token_endpoint="https://token.example")
    registry.refresh_access_token.return_value = TokenGrant(access_token="fresh", expires_in=3600)
    return registry


@pytest.fixture
def events() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture
def lifecycle(account_store, sync_log, events, registry) -> TokenLifecycle:
    return TokenLifecycle(
        account_store,
        sync_log,
        events,
        registry,
        OAuthConfig(token_refresh_buffer_seconds=300, circuit_breaker_threshold=3),
        now=lambda: NOW,
    )


@pytest.fixture
def oauth_account(account_store) -> Account:
    account = account_store.add(
        Account.from_preset(
            id="g1",
            email="user@gmail.com",
            provider=Provider.GMAIL,
            auth_type=AuthType.OAUTH,
            access_token="stale",
            refresh_token="refresh-1",
            token_expires_at=NOW + timedelta(minutes=2),
            is_verified=True,
        )
    )
    return account_store.transition_status(account.id, SyncStatus.SEEDING)


# ============================================================================
# Refresh before use
# ============================================================================


def test_token_within_buffer_is_refreshed(lifecycle, oauth_account, registry):
    refreshed = lifecycle.refresh_if_needed(oauth_account)

    assert refreshed.access_token == "fresh"
    assert refreshed.token_expires_at == NOW + timedelta(seconds=3600)
    assert refreshed.refresh_token == "refresh-1"
    registry.refresh_access_token.assert_called_once()


def test_valid_token_is_left_alone(lifecycle, account_store, oauth_account, registry):
    account = account_store.update_fields(oauth_account.id, token_expires_at=NOW + timedelta(hours=1))

    assert lifecycle.refresh_if_needed(account).access_token == "stale"
    registry.refresh_access_token.assert_not_called()


def test_password_accounts_skip_refresh(lifecycle, registry):
    account = Account(id="p", email="p@example.com", imap_host="imap.example.com", password="x")
    assert lifecycle.refresh_if_needed(account) is account
    registry.get_provider.assert_not_called()


def test_refresh_decision_is_reported(lifecycle, oauth_account, registry):
    registry.refresh_access_token.return_value = TokenGrant(access_token="stale", expires_in=3600)

    account, refreshed = lifecycle.ensure_fresh(oauth_account)

    assert refreshed
    assert account.access_token == "stale"
    assert lifecycle.ensure_fresh(account) == (account, False)


def test_adapter_reports_refresh_even_when_token_is_unchanged(lifecycle, oauth_account, registry):
    registry.refresh_access_token.return_value = TokenGrant(access_token="stale", expires_in=3600)
    adapter = GmailAdapter(tokens=lifecycle)

    assert adapter.refresh_token_if_needed(oauth_account)
    assert not adapter.refresh_token_if_needed(lifecycle.accounts.get(oauth_account.id))


def test_rotated_refresh_token_is_stored(lifecycle, oauth_account, registry):
    registry.refresh_access_token.return_value = TokenGrant(access_token="fresh", refresh_token="refresh-2")

    assert lifecycle.refresh(oauth_account).refresh_token == "refresh-2"


def test_success_resets_failure_counter(lifecycle, account_store, oauth_account, registry):
    registry.refresh_access_token.side_effect = [TokenRefreshError("401"), TokenGrant(access_token="fresh")]

    with pytest.raises(TokenRefreshError):
        lifecycle.refresh(oauth_account)
    assert account_store.get("g1").consecutive_failures == 1

    lifecycle.refresh(account_store.get("g1"))
    assert account_store.get("g1").consecutive_failures == 0


# ============================================================================
# Circuit breaker
# ============================================================================


def test_breaker_trips_at_threshold(lifecycle, account_store, sync_log, events, oauth_account, registry):
    registry.refresh_access_token.side_effect = TokenRefreshError("invalid_grant")
    listener = Mock()
    events.subscribe(listener)

    for _ in range(2):
        with pytest.raises(TokenRefreshError) as excinfo:
            lifecycle.refresh(oauth_account)
        assert not isinstance(excinfo.value, ReauthRequiredError)
    with pytest.raises(ReauthRequiredError):
        lifecycle.refresh(oauth_account)

    account = account_store.get("g1")
    assert account.sync_status == SyncStatus.FAILED
    assert account.needs_reauth
    assert account.sync_error == REAUTH_MESSAGE
    assert [entry.action for entry in sync_log.entries("g1")] == ["needs_reauth"]
    event = listener.call_args.args[0]
    assert event.new_status == SyncStatus.FAILED
    assert event.needs_reauth


def test_open_breaker_blocks_refresh(lifecycle, account_store, oauth_account, registry):
    account = account_store.update_fields(oauth_account.id, needs_reauth=True)

    with pytest.raises(ReauthRequiredError):
        lifecycle.refresh_if_needed(account)
    registry.refresh_access_token.assert_not_called()


def test_missing_refresh_token_counts_as_failure(lifecycle, account_store, oauth_account):
    account = account_store.update_fields(oauth_account.id, refresh_token=None)

    with pytest.raises(TokenRefreshError, match="no refresh token"):
        lifecycle.refresh(account)
    assert account_store.get("g1").consecutive_failures == 1


def test_store_new_tokens_closes_breaker(lifecycle, account_store, oauth_account):
    account_store.update_fields(oauth_account.id, needs_reauth=True, consecutive_failures=3)

    account = lifecycle.store_new_tokens("g1", access_token="new", refresh_token="refresh-9", expires_in=60)

    assert not account.needs_reauth
    assert account.consecutive_failures == 0
    assert account.token_expires_at == NOW + timedelta(seconds=60)


# ============================================================================
# Provider registry
# ============================================================================


def _response(status: int, payload=None, text: str = "") -> Mock:
    response = Mock(status_code=status, text=text)
    response.json.return_value = payload
    return response


def test_registry_posts_refresh_grant():
    registry = OAuthProviderRegistry(
        [OAuthProvider(name="gmail", token_endpoint="https://token.example", client_id="cid", client_secret="sec")],
        timeout=5,
    )
    with patch("mailsync.auth.tokens.requests.post") as post:
        post.return_value = _response(200, {"access_token": "a1", "expires_in": 120})
        grant = registry.refresh_access_token(provider=registry.get_provider("gmail"), refresh_token="r1")

    assert grant.access_token == "a1"
    assert grant.expires_in == 120
    post.assert_called_once_with(
        "https://token.example",
        data={"grant_type": "refresh_token", "refresh_token": "r1", "client_id": "cid", "client_secret": "sec"},
        timeout=5,
    )


@pytest.mark.parametrize(
    "response, error",
    [
        (_response(400, text="invalid_grant"), "returned 400"),
        (_response(200, {"token_type": "Bearer"}), "no access token"),
    ],
)
def test_registry_failures(response, error):
    registry = OAuthProviderRegistry([OAuthProvider(name="gmail", token_endpoint="https://token.example")])
    with patch("mailsync.auth.tokens.requests.post", return_value=response):
        with pytest.raises(TokenRefreshError, match=error):
            registry.refresh_access_token(provider=registry.get_provider("gmail"), refresh_token="r1")


def test_registry_network_error():
    registry = OAuthProviderRegistry([OAuthProvider(name="gmail", token_endpoint="https://token.example")])
    with patch("mailsync.auth.tokens.requests.post", side_effect=requests.ConnectionError("down")):
        with pytest.raises(TokenRefreshError, match="request failed"):
            registry.refresh_access_token(provider=registry.get_provider("gmail"), refresh_token="r1")


def test_registry_unknown_provider():
    registry = OAuthProviderRegistry([OAuthProvider(name="gmail", token_endpoint="https://token.example")])
    with pytest.raises(TokenRefreshError, match="Unknown OAuth provider"):
        registry.get_provider("hotmail")


def test_registry_config_overrides(monkeypatch):
    monkeypatch.setenv("MAILSYNC_GMAIL_CLIENT_ID", "env-id")
    config = OAuthConfig(
        providers={
            "gmail": OAuthProviderConfig(client_secret="file-secret"),
            "corp": OAuthProviderConfig(token_endpoint="https://sso.corp/token", client_id="corp-id"),
        }
    )

    registry = OAuthProviderRegistry.from_config(config)

    assert registry.get_provider("gmail").client_id == "env-id"
    assert registry.get_provider("gmail").client_secret == "file-secret"
    assert registry.get_provider("corp").token_endpoint == "https://sso.corp/token"
