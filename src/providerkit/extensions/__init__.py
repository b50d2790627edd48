"""Canonical <-> provider wire-format extensions.

The default registry is populated at import time with one extension per
built-in provider tag.
"""

from providerkit.extensions.anthropic import AnthropicExtension
from providerkit.extensions.base import BaseExtension, ProviderExtension
from providerkit.extensions.compatible import (
    CerebrasExtension,
    LocalExtension,
    OpenRouterExtension,
    QwenExtension,
)
from providerkit.extensions.gemini import GeminiExtension
from providerkit.extensions.openai import OpenAIExtension
from providerkit.extensions.registry import ExtensionRegistry, default_registry


def _register_defaults(registry: ExtensionRegistry) -> None:
    registry.register("openai", OpenAIExtension())
    registry.register("anthropic", AnthropicExtension())
    registry.register("gemini", GeminiExtension())
    registry.register("cerebras", CerebrasExtension())
    registry.register("qwen", QwenExtension())
    registry.register("openrouter", OpenRouterExtension())
    local = LocalExtension()
    for tag in ("lmstudio", "ollama", "llamacpp", "openai_compatible"):
        registry.register(tag, local)


_register_defaults(default_registry())

__all__ = [
    "AnthropicExtension",
    "BaseExtension",
    "CerebrasExtension",
    "ExtensionRegistry",
    "GeminiExtension",
    "LocalExtension",
    "OpenAIExtension",
    "OpenRouterExtension",
    "ProviderExtension",
    "QwenExtension",
    "default_registry",
]
