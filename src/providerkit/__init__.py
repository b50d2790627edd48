"""providerkit: one async interface over many LLM chat providers.

Public API:
    - ProviderFactory / default_factory(): build providers from tags
    - ProviderConfig / AuthConfig: provider configuration
    - GenerateOptions / ChatMessage: request shape
    - ChatStream / Chunk: response stream
    - FallbackProvider, LoadBalanceProvider, RacingProvider: composition
    - ProviderError and subclasses: classified failures
"""

from __future__ import annotations

import logging

from providerkit.config import AuthConfig, OAuthCredentialSet, ProviderConfig
from providerkit.context import CancelToken
from providerkit.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorKind,
    InvalidRequestError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    NotRegisteredError,
    ProviderError,
    ProviderKitError,
    QuotaError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    UnknownProviderError,
)
from providerkit.factory import ProviderFactory, default_factory, resolve_virtual_providers
from providerkit.metrics import MetricEvent, MetricEventType, MetricsSink
from providerkit.providers import (
    AnthropicProvider,
    BaseProvider,
    CerebrasProvider,
    GeminiProvider,
    LocalProvider,
    MockProvider,
    OpenAIProvider,
    OpenRouterProvider,
    Provider,
    QwenProvider,
)
from providerkit.retry import RetryPolicy
from providerkit.standard import RequestBuilder, StandardAdapter, StandardResponse
from providerkit.streaming import ChatStream
from providerkit.types import (
    ChatMessage,
    Chunk,
    ContentPart,
    GenerateOptions,
    HealthStatus,
    Model,
    ProviderMetrics,
    ProviderType,
    Role,
    Tool,
    ToolCall,
    ToolChoice,
    ToolFormat,
    Usage,
)
from providerkit.virtual import FallbackProvider, LoadBalanceProvider, RacingProvider

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("ai-provider-kit")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("providerkit").addHandler(logging.NullHandler())

# Re-export for convenience
__all__ = [
    "AnthropicProvider",
    "AuthConfig",
    "AuthenticationError",
    "BaseProvider",
    "CancelToken",
    "CerebrasProvider",
    "ChatMessage",
    "ChatStream",
    "Chunk",
    "ConfigurationError",
    "ContentPart",
    "ErrorKind",
    "FallbackProvider",
    "GeminiProvider",
    "GenerateOptions",
    "HealthStatus",
    "InvalidRequestError",
    "InvalidResponseError",
    "LoadBalanceProvider",
    "LocalProvider",
    "MetricEvent",
    "MetricEventType",
    "MetricsSink",
    "MockProvider",
    "Model",
    "NetworkError",
    "NotFoundError",
    "NotRegisteredError",
    "OAuthCredentialSet",
    "OpenAIProvider",
    "OpenRouterProvider",
    "Provider",
    "ProviderConfig",
    "ProviderError",
    "ProviderFactory",
    "ProviderKitError",
    "ProviderMetrics",
    "ProviderType",
    "QuotaError",
    "QwenProvider",
    "RacingProvider",
    "RateLimitError",
    "RequestBuilder",
    "RequestTimeoutError",
    "RetryPolicy",
    "Role",
    "ServerError",
    "StandardAdapter",
    "StandardResponse",
    "Tool",
    "ToolCall",
    "ToolChoice",
    "ToolFormat",
    "UnknownProviderError",
    "Usage",
    "default_factory",
    "resolve_virtual_providers",
]
