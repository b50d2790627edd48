"""Credential management: API key pools and OAuth credential sets."""

from providerkit.credentials.keys import KeyHealth, KeyPool
from providerkit.credentials.oauth import TOKEN_ENDPOINTS, OAuthManager, TokenEndpoint

__all__ = ["TOKEN_ENDPOINTS", "KeyHealth", "KeyPool", "OAuthManager", "TokenEndpoint"]
