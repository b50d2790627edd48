"""OpenAI chat completions provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

from providerkit.providers.base import BaseProvider

if TYPE_CHECKING:
    from providerkit.config import OAuthCredentialSet


class OpenAIProvider(BaseProvider):
    """OpenAI API via ``/v1/chat/completions``."""

    provider_type: ClassVar[str] = "openai"
    default_base_url: ClassVar[str] = "https://api.openai.com/v1"
    default_model: ClassVar[str] = "gpt-4o-mini"
    default_description: ClassVar[str] = "OpenAI GPT models"

    def _auth_headers(
        self, token: str, *, oauth: OAuthCredentialSet | None = None
    ) -> dict[str, str]:
        headers = super()._auth_headers(token, oauth=oauth)
        organization = self._setting("organization_id") or self._setting("organization")
        if organization:
            headers["OpenAI-Organization"] = str(organization)
        if self._setting("project_id"):
            headers["OpenAI-Project"] = str(self._setting("project_id"))
        return headers
