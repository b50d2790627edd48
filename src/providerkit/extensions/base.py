"""Extension protocol: canonical <-> provider wire conversion."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from providerkit.errors import InvalidRequestError, InvalidResponseError
from providerkit.types import Usage

if TYPE_CHECKING:
    from providerkit.standard import StandardRequest, StandardResponse
    from providerkit.streaming import StandardStreamChunk
    from providerkit.types import ContentPart

log = logging.getLogger(__name__)


@runtime_checkable
class ProviderExtension(Protocol):
    """Translate between standard requests/responses and one wire format."""

    name: str
    version: str
    description: str

    def capabilities(self) -> list[str]:
        """Feature tags supported by the wire format."""
        ...

    def standard_to_provider(self, request: StandardRequest) -> dict[str, Any]:
        """Build the JSON request body."""
        ...

    def provider_to_standard(self, payload: dict[str, Any]) -> StandardResponse:
        """Parse a complete JSON response body."""
        ...

    def provider_to_standard_chunk(self, payload: dict[str, Any]) -> StandardStreamChunk:
        """Parse one decoded stream event."""
        ...

    def validate_options(self, options: dict[str, Any]) -> None:
        """Raise InvalidRequestError for unsupported option values."""
        ...


class BaseExtension:
    """Shared defaults for extensions."""

    name: ClassVar[str] = ""
    version: ClassVar[str] = "1.0.0"
    description: ClassVar[str] = ""
    _capabilities: ClassVar[tuple[str, ...]] = ()

    def capabilities(self) -> list[str]:
        return list(self._capabilities)

    def has_capability(self, capability: str) -> bool:
        return capability in self._capabilities

    def validate_options(self, options: dict[str, Any]) -> None:
        temperature = options.get("temperature")
        if isinstance(temperature, (int, float)) and not 0 <= temperature <= 2:
            raise InvalidRequestError(
                "temperature must be between 0 and 2", provider=self.name, operation="validate"
            )
        max_tokens = options.get("max_tokens")
        if isinstance(max_tokens, int) and max_tokens < 0:
            raise InvalidRequestError(
                "max_tokens must be non-negative", provider=self.name, operation="validate"
            )
        top_p = options.get("top_p")
        if isinstance(top_p, (int, float)) and not 0 <= top_p <= 1:
            raise InvalidRequestError(
                "top_p must be between 0 and 1", provider=self.name, operation="validate"
            )

    def _invalid_response(self, message: str) -> InvalidResponseError:
        return InvalidResponseError(message, provider=self.name, operation="parse")


def data_url(part: ContentPart) -> str:
    """``data:<mime>;base64,<data>`` for inline parts, else the part's URL."""
    if part.data:
        return f"data:{part.mime_type or 'application/octet-stream'};base64,{part.data}"
    return part.url or ""


def decode_arguments(arguments: str) -> dict[str, Any]:
    """Decode a tool-call argument string into an object, tolerating junk."""
    if not arguments:
        return {}
    try:
        value = json.loads(arguments)
    except ValueError:
        log.debug("Tool arguments are not valid JSON: %.200s", arguments)
        return {}
    return value if isinstance(value, dict) else {"value": value}


def usage_from(raw: Any, prompt_key: str, completion_key: str, total_key: str = "") -> Usage | None:
    if not isinstance(raw, dict):
        return None
    prompt = int(raw.get(prompt_key) or 0)
    completion = int(raw.get(completion_key) or 0)
    total = int(raw.get(total_key) or 0) if total_key else 0
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
