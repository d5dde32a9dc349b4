"""IMAP connection lifecycle with TLS enforcement and transport retries."""

from __future__ import annotations

import logging
import random
import socket
import ssl
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, TypeVar

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from ..exceptions import AdapterError, MailSyncError
from ..models import Account, Encryption

logger = logging.getLogger(__name__)

T = TypeVar("T")
ClientFactory = Callable[..., Any]


# ---------------------------------------------------------------------------
# Retry strategy
# ---------------------------------------------------------------------------


@dataclass
class RetryStrategy:
    """Exponential backoff for transport failures.

    ``max_retries`` counts attempts, so the default of 3 means one call plus
    two retries with 1s and 2s delays.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False

    def calculate_delay(self, retry_count: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**retry_count), self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.5
        return delay

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        return attempt < self.max_retries and is_transient_error(exc)


def is_transient_error(exc: BaseException) -> bool:
    """Transport failures that a fresh connection may not hit again."""
    # Engine errors carry their own meaning; auth failures never heal by retrying
    if isinstance(exc, (MailSyncError, LoginError)):
        return False
    if isinstance(exc, IMAPClient.Error) and "AUTHENTICATIONFAILED" in str(exc).upper():
        return False
    if isinstance(exc, (TimeoutError, socket.timeout, socket.error, OSError)):
        return True
    return isinstance(exc, (IMAPClient.Error, IMAPClient.AbortError))


def with_backoff(
    operation: Callable[[], T],
    *,
    strategy: Optional[RetryStrategy] = None,
    description: str = "imap operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` retrying transport errors; the last error propagates."""
    strategy = strategy or RetryStrategy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001
            if not strategy.should_retry(attempt, exc):
                raise
            delay = strategy.calculate_delay(attempt - 1)
            logger.warning(
                "Transient IMAP failure, retrying",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "delay_seconds": round(delay, 2),
                    "error": str(exc),
                },
            )
            sleep(delay)


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


@dataclass
class ImapConnection:
    """One authenticated IMAP session for an account.

    Args:
        account: Account providing host, port, encryption and credentials
        connection_timeout: Socket timeout in seconds
        client_factory: Callable building the client; ``IMAPClient`` by default
    """

    account: Account
    connection_timeout: int = 30
    client_factory: ClientFactory = IMAPClient

    client: Optional[Any] = field(default=None, init=False)

    @contextmanager
    def connect(self) -> Iterator[Any]:
        start = time.perf_counter()
        try:
            self._establish_connection()
            logger.debug(
                "IMAP connection established",
                extra={
                    "account_id": self.account.id,
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                },
            )
            yield self.client
        finally:
            self._cleanup_connection()

    def _establish_connection(self) -> None:
        if not self.account.imap_host:
            raise AdapterError(f"Account {self.account.id} has no IMAP host")
        encryption = self.account.imap_encryption
        if encryption == Encryption.NONE:
            raise AdapterError("Unencrypted IMAP is unsupported; SSL or STARTTLS required")

        ssl_context = create_ssl_context()
        if encryption == Encryption.SSL:
            self.client = self.client_factory(
                host=self.account.imap_host,
                port=self.account.imap_port,
                ssl=True,
                ssl_context=ssl_context,
                timeout=self.connection_timeout,
                use_uid=True,
            )
        else:
            self.client = self.client_factory(
                host=self.account.imap_host,
                port=self.account.imap_port,
                ssl=False,
                timeout=self.connection_timeout,
                use_uid=True,
            )
            self.client.starttls(ssl_context)
        self._authenticate()

    def _authenticate(self) -> None:
        try:
            if self.account.is_oauth:
                if not self.account.access_token:
                    raise AdapterError(f"Account {self.account.id} has no access token")
                self.client.oauth2_login(self.account.login_name, self.account.access_token)
            else:
                if not self.account.password:
                    raise AdapterError(f"Account {self.account.id} has no password")
                self.client.login(self.account.login_name, self.account.password)
        except LoginError as exc:
            raise AdapterError(f"IMAP login rejected for account {self.account.id}: {exc}") from exc

    def _cleanup_connection(self) -> None:
        if not self.client:
            return
        try:
            self.client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during logout", extra={"account_id": self.account.id, "error": str(exc)})
        finally:
            self.client = None


__all__ = ["ImapConnection", "RetryStrategy", "create_ssl_context", "is_transient_error", "with_backoff"]
