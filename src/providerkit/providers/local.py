"""Local OpenAI-compatible servers: LM Studio, Ollama, llama.cpp, vLLM."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

from providerkit.errors import ConfigurationError
from providerkit.providers.base import BaseProvider

if TYPE_CHECKING:
    from providerkit.config import ProviderConfig

LOCAL_DEFAULTS: dict[str, tuple[str, str]] = {
    "lmstudio": ("http://localhost:1234/v1", "local-model"),
    "ollama": ("http://localhost:11434/v1", "llama3.1:8b"),
    "llamacpp": ("http://localhost:8080/v1", "local-model"),
    "openai_compatible": ("", ""),
}


class LocalProvider(BaseProvider):
    """A local server speaking the OpenAI chat-completions protocol.

    Credentials are optional; a configured key is sent as a bearer token.
    """

    provider_type: ClassVar[str] = ""
    default_description: ClassVar[str] = "Local OpenAI-compatible server"

    def __init__(self, config: ProviderConfig, **kwargs: Any) -> None:
        if config.type not in LOCAL_DEFAULTS:
            raise ConfigurationError(
                f"{config.type!r} is not a local provider type",
                hint=f"Use one of: {', '.join(LOCAL_DEFAULTS)}",
            )
        if config.type == "openai_compatible" and not config.base_url:
            raise ConfigurationError(
                "openai_compatible providers need a base_url",
                hint="e.g. base_url='http://localhost:8000/v1' for vLLM",
            )
        super().__init__(config, **kwargs)

    @property
    def base_url(self) -> str:
        with self._lock:
            return self._config.base_url or LOCAL_DEFAULTS[self._config.type][0]

    def get_default_model(self) -> str:
        with self._lock:
            return self._config.default_model or LOCAL_DEFAULTS[self._config.type][1]
