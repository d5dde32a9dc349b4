"""Provider to adapter registry.

The registry must name an adapter for every :class:`Provider` member; a
missing entry fails at import time instead of at the first sync.
"""

from __future__ import annotations

from typing import Any, Dict, Type

from ..exceptions import UnknownProviderError
from ..models import Provider
from .base import ProviderAdapter
from .gmail import GmailAdapter
from .providers import (
    FastmailAdapter,
    GenericImapAdapter,
    GmxAdapter,
    ICloudAdapter,
    OutlookAdapter,
    WebDeAdapter,
    YahooAdapter,
    YandexAdapter,
    ZohoAdapter,
)

ADAPTERS: Dict[Provider, Type[ProviderAdapter]] = {
    Provider.CUSTOM: GenericImapAdapter,
    Provider.GMAIL: GmailAdapter,
    Provider.OUTLOOK: OutlookAdapter,
    Provider.YAHOO: YahooAdapter,
    Provider.ICLOUD: ICloudAdapter,
    Provider.ZOHO: ZohoAdapter,
    Provider.FASTMAIL: FastmailAdapter,
    Provider.YANDEX: YandexAdapter,
    Provider.GMX: GmxAdapter,
    Provider.WEBDE: WebDeAdapter,
}


def _check_registry() -> None:
    missing = [provider.value for provider in Provider if provider not in ADAPTERS]
    if missing:
        raise RuntimeError(f"No adapter registered for providers: {missing}")
    mismatched = [
        provider.value for provider, adapter in ADAPTERS.items() if adapter.provider is not provider
    ]
    if mismatched:
        raise RuntimeError(f"Adapters registered under the wrong provider: {mismatched}")


_check_registry()


def adapter_class(provider: Provider) -> Type[ProviderAdapter]:
    try:
        return ADAPTERS[Provider(provider)]
    except (KeyError, ValueError) as exc:
        raise UnknownProviderError(f"No adapter for provider {provider!r}") from exc


def create_adapter(provider: Provider, **kwargs: Any) -> ProviderAdapter:
    """Instantiate the adapter for ``provider`` with shared settings."""
    return adapter_class(provider)(**kwargs)


__all__ = ["ADAPTERS", "adapter_class", "create_adapter"]
