"""OpenAI-compatible services that differ only in small details."""

from __future__ import annotations

from typing import ClassVar

from providerkit.extensions.openai import _PASSTHROUGH_METADATA, OpenAIExtension

_TEXT_CAPABILITIES = (
    "chat",
    "streaming",
    "tool_calling",
    "function_calling",
    "json_mode",
    "system_messages",
    "temperature",
    "top_p",
    "max_tokens",
    "stop_sequences",
)


class CerebrasExtension(OpenAIExtension):
    name: ClassVar[str] = "cerebras"
    description: ClassVar[str] = "Cerebras inference (OpenAI-compatible)"
    _capabilities: ClassVar[tuple[str, ...]] = (*_TEXT_CAPABILITIES, "seed")
    supports_documents: ClassVar[bool] = False


class QwenExtension(OpenAIExtension):
    name: ClassVar[str] = "qwen"
    description: ClassVar[str] = "Alibaba Qwen (OpenAI-compatible mode)"
    _capabilities: ClassVar[tuple[str, ...]] = (*_TEXT_CAPABILITIES, "vision", "thinking")
    supports_documents: ClassVar[bool] = False
    passthrough_metadata: ClassVar[tuple[str, ...]] = (*_PASSTHROUGH_METADATA, "enable_thinking")


class OpenRouterExtension(OpenAIExtension):
    name: ClassVar[str] = "openrouter"
    description: ClassVar[str] = "OpenRouter multi-vendor gateway"
    _capabilities: ClassVar[tuple[str, ...]] = (
        *_TEXT_CAPABILITIES,
        "seed",
        "vision",
        "documents",
        "routing",
    )
    passthrough_metadata: ClassVar[tuple[str, ...]] = (
        *_PASSTHROUGH_METADATA,
        "models",
        "route",
        "provider",
        "transforms",
    )


class LocalExtension(OpenAIExtension):
    """LM Studio, Ollama, llama.cpp and other local OpenAI-style servers."""

    name: ClassVar[str] = "openai_compatible"
    description: ClassVar[str] = "Local OpenAI-compatible server"
    _capabilities: ClassVar[tuple[str, ...]] = (*_TEXT_CAPABILITIES, "vision")
    supports_documents: ClassVar[bool] = False
    stream_usage: ClassVar[bool] = False
