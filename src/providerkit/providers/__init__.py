"""Concrete providers."""

from providerkit.providers.anthropic import AnthropicProvider
from providerkit.providers.base import BaseProvider, Provider
from providerkit.providers.cerebras import CerebrasProvider
from providerkit.providers.gemini import GeminiProvider
from providerkit.providers.local import LocalProvider
from providerkit.providers.mock import MockProvider
from providerkit.providers.openai import OpenAIProvider
from providerkit.providers.openrouter import OpenRouterProvider
from providerkit.providers.qwen import QwenProvider

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "CerebrasProvider",
    "GeminiProvider",
    "LocalProvider",
    "MockProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "Provider",
    "QwenProvider",
]
