"""OpenRouter gateway provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

from providerkit.providers.base import BaseProvider

if TYPE_CHECKING:
    from providerkit.config import OAuthCredentialSet


class OpenRouterProvider(BaseProvider):
    """Many vendors' models behind one OpenAI-style endpoint.

    ``provider_config["site_url"]`` and ``provider_config["site_name"]`` are
    sent as the attribution headers OpenRouter uses for app rankings.
    """

    provider_type: ClassVar[str] = "openrouter"
    default_base_url: ClassVar[str] = "https://openrouter.ai/api/v1"
    default_model: ClassVar[str] = "openai/gpt-4o-mini"
    default_description: ClassVar[str] = "OpenRouter multi-vendor gateway"

    def _auth_headers(
        self, token: str, *, oauth: OAuthCredentialSet | None = None
    ) -> dict[str, str]:
        headers = super()._auth_headers(token, oauth=oauth)
        site_url = self._setting("site_url")
        site_name = self._setting("site_name")
        if site_url:
            headers["HTTP-Referer"] = str(site_url)
        if site_name:
            headers["X-Title"] = str(site_name)
        return headers
