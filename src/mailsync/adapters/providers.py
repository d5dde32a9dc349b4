"""Adapters for the IMAP providers without label semantics."""

from __future__ import annotations

from ..models import Provider
from .base import ProviderAdapter


class GenericImapAdapter(ProviderAdapter):
    """Any RFC 3501 server; folder names from the standard map."""

    provider = Provider.CUSTOM


class OutlookAdapter(ProviderAdapter):
    provider = Provider.OUTLOOK
    oauth_capable = True


class YahooAdapter(ProviderAdapter):
    provider = Provider.YAHOO
    oauth_capable = True


class ICloudAdapter(ProviderAdapter):
    provider = Provider.ICLOUD


class ZohoAdapter(ProviderAdapter):
    provider = Provider.ZOHO
    oauth_capable = True


class FastmailAdapter(ProviderAdapter):
    provider = Provider.FASTMAIL


class YandexAdapter(ProviderAdapter):
    provider = Provider.YANDEX
    oauth_capable = True


class GmxAdapter(ProviderAdapter):
    provider = Provider.GMX


class WebDeAdapter(ProviderAdapter):
    provider = Provider.WEBDE


__all__ = [
    "FastmailAdapter",
    "GenericImapAdapter",
    "GmxAdapter",
    "ICloudAdapter",
    "OutlookAdapter",
    "WebDeAdapter",
    "YahooAdapter",
    "YandexAdapter",
    "ZohoAdapter",
]
