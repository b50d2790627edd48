"""Google Gemini ``generateContent`` provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar
from urllib.parse import quote

from providerkit.providers.base import BaseProvider
from providerkit.types import Model, ToolFormat

if TYPE_CHECKING:
    from providerkit.config import OAuthCredentialSet
    from providerkit.standard import StandardRequest


class GeminiProvider(BaseProvider):
    """Gemini Developer API.

    API keys go in ``x-goog-api-key``; OAuth tokens are bearer tokens, with
    ``provider_config["project_id"]`` sent as the quota project.
    """

    provider_type: ClassVar[str] = "gemini"
    default_base_url: ClassVar[str] = "https://generativelanguage.googleapis.com/v1beta"
    default_model: ClassVar[str] = "gemini-2.5-flash"
    default_description: ClassVar[str] = "Google Gemini models"
    tool_format: ClassVar[ToolFormat] = ToolFormat.GEMINI

    def _chat_url(self, request: StandardRequest) -> str:
        model = request.model.removeprefix("models/")
        base = f"{self.base_url}/models/{quote(model, safe='.-_')}"
        if request.stream:
            return f"{base}:streamGenerateContent?alt=sse"
        return f"{base}:generateContent"

    def _auth_headers(
        self, token: str, *, oauth: OAuthCredentialSet | None = None
    ) -> dict[str, str]:
        if oauth is None:
            return {**self._base_headers(), "x-goog-api-key": token}
        headers = super()._auth_headers(token, oauth=oauth)
        project = self._setting("project_id")
        if project:
            headers["x-goog-user-project"] = str(project)
        return headers

    def _parse_models(self, payload: Any) -> list[Model]:
        models: list[Model] = []
        for entry in (payload or {}).get("models") or []:
            if not isinstance(entry, dict) or not entry.get("name"):
                continue
            methods = entry.get("supportedGenerationMethods") or []
            if methods and "generateContent" not in methods:
                continue
            model_id = str(entry["name"]).removeprefix("models/")
            models.append(
                Model(
                    id=model_id,
                    name=str(entry.get("displayName") or model_id),
                    provider=self.type,
                    max_tokens=int(entry.get("inputTokenLimit") or 0),
                    supports_tool_calling=True,
                    description=str(entry.get("description") or ""),
                )
            )
        return models
