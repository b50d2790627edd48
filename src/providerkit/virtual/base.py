"""Shared plumbing for providers composed of other providers."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any, ClassVar

from providerkit.errors import (
    ConfigurationError,
    ErrorKind,
    InvalidRequestError,
    NetworkError,
    ProviderError,
    ProviderKitError,
    error_for_kind,
    error_kind,
)
from providerkit.metrics import MetricsRecorder
from providerkit.streaming import ChatStream
from providerkit.types import HealthStatus, ToolFormat

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from providerkit.config import AuthConfig, ProviderConfig
    from providerkit.metrics import MetricsSink
    from providerkit.providers.base import Provider
    from providerkit.types import Chunk, GenerateOptions, Model, ProviderMetrics

log = logging.getLogger(__name__)


class VirtualProvider:
    """Base for fallback, load-balance and racing providers.

    Children are referenced by name in ``provider_config["providers"]`` and
    injected after construction with ``set_providers``.
    """

    default_description: ClassVar[str] = ""

    def __init__(self, config: ProviderConfig, *, metrics_sink: MetricsSink | None = None) -> None:
        self._lock = threading.RLock()
        self._config = config.clone()
        self._providers: list[Provider] = []
        self._metrics = MetricsRecorder(self._config.name, self._config.type, metrics_sink)

    # --- Identity ---

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def type(self) -> str:
        return self._config.type

    @property
    def description(self) -> str:
        return self._config.description or self.default_description

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, providers={self.provider_names!r})"

    # --- Children ---

    @property
    def provider_names(self) -> list[str]:
        """Child names referenced by the configuration."""
        with self._lock:
            raw = self._config.provider_config.get("providers") or []
        names: list[str] = []
        for item in raw:
            if isinstance(item, str):
                names.append(item)
            elif isinstance(item, dict) and item.get("name"):
                names.append(str(item["name"]))
        return names

    def set_providers(self, providers: list[Provider]) -> None:
        with self._lock:
            self._providers = list(providers)

    @property
    def providers(self) -> list[Provider]:
        with self._lock:
            return list(self._providers)

    def _require_providers(self) -> list[Provider]:
        providers = self.providers
        if not providers:
            raise ConfigurationError(
                f"No providers configured for {self.type} provider {self.name!r}",
                hint="Call set_providers() or resolve_virtual_providers() after creation.",
            )
        return providers

    # --- Capabilities ---

    async def get_models(self) -> list[Model]:
        """Union of the children's models, first occurrence wins."""
        seen: dict[str, Model] = {}
        for provider in self.providers:
            try:
                models = await provider.get_models()
            except ProviderError as exc:
                log.debug("Skipping models of %s: %s", provider.name, exc)
                continue
            for model in models:
                seen.setdefault(model.id, model)
        return list(seen.values())

    def get_default_model(self) -> str:
        if self._config.default_model:
            return self._config.default_model
        providers = self.providers
        return providers[0].get_default_model() if providers else ""

    def supports_streaming(self) -> bool:
        return all(p.supports_streaming() for p in self.providers)

    def supports_tool_calling(self) -> bool:
        providers = self.providers
        return bool(providers) and all(p.supports_tool_calling() for p in providers)

    def supports_responses_api(self) -> bool:
        return False

    def get_tool_format(self) -> ToolFormat:
        return ToolFormat.OPENAI

    # --- Authentication (children own their credentials) ---

    async def authenticate(self, auth: AuthConfig) -> None:  # noqa: ARG002
        log.debug("%s provider %s ignores authenticate()", self.type, self.name)

    def is_authenticated(self) -> bool:
        return True

    async def logout(self) -> None:
        return None

    # --- Configuration ---

    def configure(self, config: ProviderConfig) -> None:
        with self._lock:
            self._config = config.clone()

    def get_config(self) -> ProviderConfig:
        with self._lock:
            return self._config.clone()

    def _setting(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._config.provider_config.get(key, default)

    # --- Misc surface ---

    async def invoke_server_tool(self, name: str, params: dict[str, Any]) -> Any:  # noqa: ARG002
        raise InvalidRequestError(
            f"server-side tool {name!r} is not supported by {self.type} providers",
            provider=self.name,
            operation="invoke_server_tool",
        )

    async def health_check(self) -> HealthStatus:
        """Healthy when at least one child is healthy."""
        providers = self.providers
        if not providers:
            status = HealthStatus(healthy=False, message="no providers configured")
        else:
            results = await asyncio.gather(
                *(p.health_check() for p in providers), return_exceptions=True
            )
            healthy = [
                r for r in results if isinstance(r, HealthStatus) and r.healthy
            ]
            status = HealthStatus(
                healthy=bool(healthy),
                message=f"{len(healthy)}/{len(providers)} providers healthy",
            )
        self._metrics.set_health(status)
        return status

    def get_metrics(self) -> ProviderMetrics:
        return self._metrics.snapshot()

    def set_metrics_sink(self, sink: MetricsSink | None) -> None:
        self._metrics.sink = sink

    async def aclose(self) -> None:
        """Children are owned by the caller and stay open."""
        return None

    async def __aenter__(self) -> VirtualProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- Helpers for subclasses ---

    def _all_failed(self, last_exc: BaseException | None, attempts: int) -> ProviderKitError:
        if last_exc is None:
            return ConfigurationError(f"No providers available for {self.name!r}")
        kind = error_kind(last_exc) or ErrorKind.SERVER
        return error_for_kind(
            kind,
            f"all {attempts} providers failed, last error: {last_exc}",
            provider=self.name,
            operation="generate",
            status_code=getattr(last_exc, "status_code", None),
        )

    def _check_cancelled(self, options: GenerateOptions) -> None:
        if options.context is not None and options.context.cancelled:
            raise NetworkError(
                f"request cancelled: {options.context.reason}",
                provider=self.name,
                operation="generate",
            )


async def open_first_chunk(
    provider: Provider, options: GenerateOptions
) -> tuple[ChatStream, Chunk | None]:
    """Start a completion and wait for its first chunk.

    Errors raised by the first read propagate with the stream closed. A
    stream that ends without any chunk returns ``None``.
    """
    stream = await provider.generate_chat_completion(options)
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        return stream, None
    except BaseException:
        await stream.aclose()
        raise
    return stream, first


def committed_stream(
    inner: ChatStream,
    first: Chunk | None,
    tags: dict[str, Any],
    *,
    provider: str,
    options: GenerateOptions,
) -> ChatStream:
    """Re-emit *first* and the rest of *inner*, tagging each chunk's metadata."""

    async def replay() -> AsyncIterator[Chunk]:
        if first is not None:
            first.metadata.update(tags)
            yield first
        async for chunk in inner:
            chunk.metadata.update(tags)
            yield chunk

    return ChatStream(replay(), on_close=inner.aclose, context=options.context, provider=provider)
