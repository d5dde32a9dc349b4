"""OAuth token refresh and re-authentication."""

from .tokens import OAuthProvider, OAuthProviderRegistry, TokenLifecycle

__all__ = ["OAuthProvider", "OAuthProviderRegistry", "TokenLifecycle"]
