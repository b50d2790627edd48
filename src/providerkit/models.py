"""Model discovery cache and static model metadata.

``ModelCache`` memoizes a provider's live model list for a TTL and makes
concurrent callers share one discovery request. When discovery fails the
cache serves the last good list, or the provider's static fallback list when
it has none, so callers always get something usable for default selection.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import time
from typing import TYPE_CHECKING

from providerkit._singleflight import SingleFlight
from providerkit.types import Model

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = logging.getLogger(__name__)

DEFAULT_MODEL_TTL_S = 24 * 60 * 60


@dataclass(frozen=True)
class ModelMetadata:
    display_name: str
    max_tokens: int
    description: str = ""
    supports_tools: bool = True
    supports_streaming: bool = True
    supports_vision: bool = False
    capabilities: tuple[str, ...] = ()


def _m(
    name: str,
    max_tokens: int,
    description: str = "",
    *,
    vision: bool = False,
    tools: bool = True,
    extra: tuple[str, ...] = (),
) -> ModelMetadata:
    caps = ("chat", "streaming") + (("tools",) if tools else ()) + (("vision",) if vision else ())
    return ModelMetadata(
        display_name=name,
        max_tokens=max_tokens,
        description=description,
        supports_tools=tools,
        supports_vision=vision,
        capabilities=caps + extra,
    )


_OPENAI = {
    "gpt-4o": _m("GPT-4o", 128000, "OpenAI's high-intelligence flagship model", vision=True),
    "gpt-4o-mini": _m("GPT-4o Mini", 128000, "OpenAI's efficient small model", vision=True),
    "gpt-4.1": _m("GPT-4.1", 1047576, "Long-context GPT-4 series model", vision=True),
    "gpt-4.1-mini": _m("GPT-4.1 Mini", 1047576, "Smaller long-context model", vision=True),
    "gpt-4-turbo": _m("GPT-4 Turbo", 128000, "OpenAI's balanced GPT-4 model", vision=True),
    "gpt-4": _m("GPT-4", 8192, "OpenAI's previous flagship model"),
    "gpt-3.5-turbo": _m("GPT-3.5 Turbo", 16385, "OpenAI's fast and capable model"),
    "o3-mini": _m("o3-mini", 200000, "Small reasoning model", extra=("reasoning",)),
}

_ANTHROPIC_DESCRIPTIONS = {
    "claude-opus-4-5-20251101": ("Claude Opus 4.5", "Most powerful model for complex reasoning"),
    "claude-opus-4-1-20250805": ("Claude Opus 4.1", "Advanced reasoning model"),
    "claude-sonnet-4-5-20250929": ("Claude Sonnet 4.5", "Best balance of intelligence and speed"),
    "claude-sonnet-4-20250514": ("Claude Sonnet 4", "Balanced performance model"),
    "claude-haiku-4-5-20251001": ("Claude Haiku 4.5", "Fastest model for quick tasks"),
    "claude-3-5-sonnet-20241022": ("Claude 3.5 Sonnet (Oct 2024)", "Capable Sonnet model"),
    "claude-3-5-haiku-20241022": ("Claude 3.5 Haiku (Oct 2024)", "Fast Haiku model"),
    "claude-3-opus-20240229": ("Claude 3 Opus", "Powerful model for complex tasks"),
    "claude-3-haiku-20240307": ("Claude 3 Haiku", "Fastest and most compact model"),
}
_ANTHROPIC = {
    model_id: _m(name, 200000, desc, vision=True)
    for model_id, (name, desc) in _ANTHROPIC_DESCRIPTIONS.items()
}

_GEMINI = {
    "gemini-2.5-pro": _m("Gemini 2.5 Pro", 2097152, "Gemini 2.5 Pro with 2M context", vision=True),
    "gemini-2.5-flash": _m("Gemini 2.5 Flash", 1048576, "Fast Gemini 2.5 model", vision=True),
    "gemini-2.5-flash-lite": _m("Gemini 2.5 Flash Lite", 524288, "Lightweight Flash", vision=True),
    "gemini-2.0-flash": _m("Gemini 2.0 Flash", 1048576, "Stable Gemini 2.0 Flash", vision=True),
    "gemini-2.0-flash-lite": _m("Gemini 2.0 Flash Lite", 524288, "Lightweight 2.0 Flash", vision=True),
}

_CEREBRAS = {
    "llama3.1-8b": _m("Llama 3.1 8B", 8192, "Fast Llama 3.1 on Cerebras"),
    "llama-3.3-70b": _m("Llama 3.3 70B", 65536, "Llama 3.3 70B on Cerebras"),
    "qwen-3-32b": _m("Qwen 3 32B", 65536, "Qwen 3 32B on Cerebras"),
    "gpt-oss-120b": _m("GPT OSS 120B", 65536, "Open-weight GPT model on Cerebras"),
}

_QWEN = {
    "qwen3-coder-plus": _m("Qwen3 Coder Plus", 1000000, "Qwen coding model"),
    "qwen3-coder-flash": _m("Qwen3 Coder Flash", 1000000, "Fast Qwen coding model"),
    "qwen-max": _m("Qwen Max", 32768, "Most capable Qwen model"),
    "qwen-plus": _m("Qwen Plus", 131072, "Balanced Qwen model"),
    "qwen-turbo": _m("Qwen Turbo", 1000000, "Fast Qwen model"),
    "qwen-vl-plus": _m("Qwen VL Plus", 32768, "Qwen vision model", vision=True),
}

_OPENROUTER = {
    "openai/gpt-4o-mini": _m("GPT-4o Mini (OpenRouter)", 128000, vision=True),
    "anthropic/claude-sonnet-4.5": _m("Claude Sonnet 4.5 (OpenRouter)", 200000, vision=True),
    "google/gemini-2.5-flash": _m("Gemini 2.5 Flash (OpenRouter)", 1048576, vision=True),
    "meta-llama/llama-3.3-70b-instruct": _m("Llama 3.3 70B (OpenRouter)", 131072),
}

_OLLAMA = {
    "llama3.1:8b": _m("Llama 3.1 8B", 131072, "Local Llama 3.1"),
    "qwen2.5-coder:7b": _m("Qwen 2.5 Coder 7B", 32768, "Local Qwen coder"),
    "mistral:7b": _m("Mistral 7B", 32768, "Local Mistral"),
}

STATIC_METADATA: dict[str, dict[str, ModelMetadata]] = {
    "openai": _OPENAI,
    "anthropic": _ANTHROPIC,
    "gemini": _GEMINI,
    "cerebras": _CEREBRAS,
    "qwen": _QWEN,
    "openrouter": _OPENROUTER,
    "ollama": _OLLAMA,
}


class ModelMetadataRegistry:
    """Static model metadata keyed by model id."""

    def __init__(self, provider: str, metadata: dict[str, ModelMetadata] | None = None):
        self.provider = provider
        self._metadata = dict(
            metadata if metadata is not None else STATIC_METADATA.get(provider, {})
        )

    def register(self, model_id: str, metadata: ModelMetadata) -> None:
        self._metadata[model_id] = metadata

    def get(self, model_id: str) -> ModelMetadata | None:
        found = self._metadata.get(model_id)
        if found is not None:
            return found
        # Dated snapshots ("gpt-4o-2024-08-06") inherit their family's entry.
        best = ""
        for known in self._metadata:
            if model_id.startswith(known + "-") and len(known) > len(best):
                best = known
        return self._metadata.get(best) if best else None

    def enrich(self, models: list[Model]) -> list[Model]:
        """Fill blank display name, max tokens, capabilities and description."""
        enriched: list[Model] = []
        for model in models:
            meta = self.get(model.id)
            if meta is None:
                enriched.append(model)
                continue
            enriched.append(
                replace(
                    model,
                    name=model.name if model.name and model.name != model.id else meta.display_name,
                    max_tokens=model.max_tokens or meta.max_tokens,
                    description=model.description or meta.description,
                    supports_streaming=meta.supports_streaming,
                    supports_tool_calling=model.supports_tool_calling or meta.supports_tools,
                    supports_vision=model.supports_vision or meta.supports_vision,
                    capabilities=model.capabilities or list(meta.capabilities),
                )
            )
        return enriched

    def fallback_models(self) -> list[Model]:
        """Static model list used when live discovery fails."""
        return [
            Model(
                id=model_id,
                name=meta.display_name,
                provider=self.provider,
                max_tokens=meta.max_tokens,
                supports_streaming=meta.supports_streaming,
                supports_tool_calling=meta.supports_tools,
                supports_vision=meta.supports_vision,
                capabilities=list(meta.capabilities),
                description=meta.description,
            )
            for model_id, meta in self._metadata.items()
        ]


@dataclass
class ModelCache:
    """TTL cache for one provider's model list with single-flight fetches."""

    ttl_s: float = DEFAULT_MODEL_TTL_S
    _models: list[Model] = field(default_factory=list)
    _fetched_at: float | None = None
    _flight: SingleFlight[str, list[Model]] = field(default_factory=SingleFlight)

    def is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return time.monotonic() - self._fetched_at >= self.ttl_s

    def get(self) -> list[Model] | None:
        """Cached list if fresh, else None."""
        if self.is_stale():
            return None
        return list(self._models)

    def update(self, models: list[Model]) -> None:
        self._models = list(models)
        self._fetched_at = time.monotonic()

    def invalidate(self) -> None:
        self._models = []
        self._fetched_at = None

    async def get_models(
        self,
        fetch: Callable[[], Awaitable[list[Model]]],
        fallback: Callable[[], list[Model]] | None = None,
    ) -> list[Model]:
        """Return cached models, fetching once per TTL window.

        Fetch failures never propagate when a stale list or *fallback* exists.
        """
        cached = self.get()
        if cached is not None:
            log.debug("Model list cache hit")
            return cached

        async def work() -> list[Model]:
            # A concurrent caller may have filled the cache meanwhile.
            fresh = self.get()
            if fresh is not None:
                return fresh
            models = await fetch()
            self.update(models)
            return models

        try:
            return list(await self._flight.do("models", work))
        except Exception as exc:
            if self._models:
                log.warning("Model discovery failed, serving stale list: %s", exc)
                return list(self._models)
            if fallback is None:
                raise
            log.warning("Model discovery failed, using static fallback: %s", exc)
            return fallback()
