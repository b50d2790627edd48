"""Anthropic Messages API provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

from providerkit.providers.base import BaseProvider
from providerkit.types import ToolFormat

if TYPE_CHECKING:
    from providerkit.config import OAuthCredentialSet

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_OAUTH_BETA = "oauth-2025-04-20"


class AnthropicProvider(BaseProvider):
    """Claude models via ``/v1/messages``.

    API keys are sent as ``x-api-key``. OAuth access tokens (Claude
    subscriptions) are sent as a bearer token together with the OAuth beta
    flag.
    """

    provider_type: ClassVar[str] = "anthropic"
    default_base_url: ClassVar[str] = "https://api.anthropic.com/v1"
    default_model: ClassVar[str] = "claude-sonnet-4-5-20250929"
    default_description: ClassVar[str] = "Anthropic Claude models"
    tool_format: ClassVar[ToolFormat] = ToolFormat.ANTHROPIC
    chat_path: ClassVar[str] = "/messages"

    def _auth_headers(
        self, token: str, *, oauth: OAuthCredentialSet | None = None
    ) -> dict[str, str]:
        headers = {**self._base_headers(), "anthropic-version": ANTHROPIC_VERSION}
        if oauth is None:
            headers["x-api-key"] = token
            return headers
        headers["Authorization"] = f"Bearer {token}"
        extra = self._setting("anthropic_beta")
        headers["anthropic-beta"] = (
            f"{ANTHROPIC_OAUTH_BETA},{extra}" if extra else ANTHROPIC_OAUTH_BETA
        )
        return headers
