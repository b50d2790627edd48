"""Alibaba Qwen provider (OpenAI-compatible mode)."""

from __future__ import annotations

from typing import ClassVar

from providerkit.providers.base import BaseProvider

QWEN_PORTAL_URL = "https://portal.qwen.ai/v1"
DASHSCOPE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"


class QwenProvider(BaseProvider):
    """Qwen models.

    OAuth identities (Qwen Code accounts) talk to the Qwen portal; API keys
    talk to DashScope's compatible-mode endpoint.
    """

    provider_type: ClassVar[str] = "qwen"
    default_base_url: ClassVar[str] = DASHSCOPE_URL
    default_model: ClassVar[str] = "qwen3-coder-flash"
    default_description: ClassVar[str] = "Alibaba Qwen models"

    @property
    def base_url(self) -> str:
        with self._lock:
            if self._config.base_url:
                return self._config.base_url
            if self._config.oauth_credentials:
                return QWEN_PORTAL_URL
        return self.default_base_url
