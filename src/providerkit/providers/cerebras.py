"""Cerebras inference provider (OpenAI-compatible)."""

from __future__ import annotations

from typing import ClassVar

from providerkit.providers.base import BaseProvider


class CerebrasProvider(BaseProvider):
    provider_type: ClassVar[str] = "cerebras"
    default_base_url: ClassVar[str] = "https://api.cerebras.ai/v1"
    default_model: ClassVar[str] = "llama-3.3-70b"
    default_description: ClassVar[str] = "Cerebras wafer-scale inference"
