"""Provider factory: tag -> constructor registry plus virtual wiring.

Example:
    factory = default_factory()
    openai = factory.create("openai", ProviderConfig(type="openai", name="primary"))
    claude = factory.create("anthropic", ProviderConfig(type="anthropic"))
    fallback = factory.create(
        "fallback",
        ProviderConfig(type="fallback", provider_config={"providers": ["primary", "anthropic"]}),
    )
    resolve_virtual_providers([openai, claude, fallback])
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
import logging
import threading
from typing import TYPE_CHECKING, Any

from providerkit.config import ProviderConfig
from providerkit.errors import ConfigurationError, NotRegisteredError, UnknownProviderError
from providerkit.providers import (
    AnthropicProvider,
    CerebrasProvider,
    GeminiProvider,
    LocalProvider,
    OpenAIProvider,
    OpenRouterProvider,
    QwenProvider,
)
from providerkit.types import LOCAL_PROVIDER_TYPES, ProviderType
from providerkit.virtual import FallbackProvider, LoadBalanceProvider, RacingProvider

if TYPE_CHECKING:
    from collections.abc import Mapping

    from providerkit.metrics import MetricsSink
    from providerkit.providers.base import Provider

log = logging.getLogger(__name__)

#: Builds a provider from its configuration.
ProviderConstructor = Callable[[ProviderConfig], "Provider"]


class ProviderFactory:
    """Creates providers from tags.

    A metrics sink set on the factory is handed to every provider it creates
    that exposes ``set_metrics_sink``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._constructors: dict[str, ProviderConstructor] = {}
        self._sink: MetricsSink | None = None

    def register(self, provider_type: str | ProviderType, constructor: ProviderConstructor) -> None:
        """Register (or replace) the constructor for *provider_type*."""
        tag = _tag(provider_type)
        with self._lock:
            if tag in self._constructors:
                log.debug("Replacing constructor for provider type %s", tag)
            self._constructors[tag] = constructor

    def supported_types(self) -> list[str]:
        with self._lock:
            return sorted(self._constructors)

    def is_registered(self, provider_type: str | ProviderType) -> bool:
        with self._lock:
            return _tag(provider_type) in self._constructors

    def set_metrics_sink(self, sink: MetricsSink | None) -> None:
        with self._lock:
            self._sink = sink

    def validate_config(self, config: ProviderConfig) -> None:
        """Raise if *config* cannot be turned into a working provider."""
        if not self.is_registered(config.type):
            raise NotRegisteredError(
                f"Provider type {config.type!r} is not registered",
                hint=f"Registered types: {', '.join(self.supported_types()) or 'none'}",
            )
        if config.is_virtual:
            children = config.provider_config.get("providers") or []
            virtual_models = config.provider_config.get("virtual_models") or {}
            if not children and not virtual_models:
                raise ConfigurationError(
                    f"Virtual provider {config.name!r} lists no child providers",
                    hint="Set provider_config={'providers': ['name-a', 'name-b']}.",
                )
            return
        if config.type == ProviderType.OPENAI_COMPATIBLE.value and not config.base_url:
            raise ConfigurationError(
                f"Provider {config.name!r} of type openai_compatible needs a base_url"
            )
        config.validate_for_use()

    def create(
        self, provider_type: str | ProviderType, config: ProviderConfig | Mapping[str, Any]
    ) -> Provider:
        """Construct a provider of *provider_type* from *config*.

        A mapping is accepted in place of a ``ProviderConfig``; its ``type`` is
        forced to *provider_type*.
        """
        tag = _tag(provider_type)
        with self._lock:
            constructor = self._constructors.get(tag)
            sink = self._sink
        if constructor is None:
            raise NotRegisteredError(
                f"Provider type {tag!r} is not registered",
                hint=f"Registered types: {', '.join(self.supported_types()) or 'none'}",
            )
        if isinstance(config, ProviderConfig):
            cfg = config if config.type == tag else config.model_copy(update={"type": tag})
        else:
            cfg = ProviderConfig.from_mapping({**config, "type": tag})

        provider = constructor(cfg)
        if sink is not None:
            set_sink = getattr(provider, "set_metrics_sink", None)
            if callable(set_sink):
                set_sink(sink)
        log.debug("Created %s provider %s", tag, provider.name)
        return provider

    def create_all(self, configs: Iterable[ProviderConfig]) -> list[Provider]:
        """Create every provider in *configs* and wire the virtual ones."""
        providers = [self.create(cfg.type, cfg) for cfg in configs]
        resolve_virtual_providers(providers)
        return providers


def resolve_virtual_providers(providers: Iterable[Provider]) -> None:
    """Inject children into every virtual provider, matching names in *providers*.

    Raises:
        UnknownProviderError: A virtual provider references a name that is
            not present.
    """
    providers = list(providers)
    by_name = {p.name: p for p in providers}
    for provider in providers:
        set_providers = getattr(provider, "set_providers", None)
        if not callable(set_providers):
            continue
        children: list[Provider] = []
        for name in _child_names(provider):
            child = by_name.get(name)
            if child is None:
                raise UnknownProviderError(
                    f"Virtual provider {provider.name!r} references unknown provider {name!r}",
                    hint=f"Known providers: {', '.join(sorted(by_name))}",
                )
            if child is provider:
                raise ConfigurationError(
                    f"Virtual provider {provider.name!r} cannot reference itself"
                )
            children.append(child)
        set_providers(children)


def _child_names(provider: Provider) -> list[str]:
    names = list(getattr(provider, "provider_names", []))
    # Racing virtual models may reference children not listed under "providers".
    for vm in getattr(provider, "virtual_models", {}).values():
        for ref in vm.providers:
            if ref.name not in names:
                names.append(ref.name)
    return names


def _tag(provider_type: str | ProviderType) -> str:
    value = provider_type.value if isinstance(provider_type, ProviderType) else provider_type
    return value.strip().lower()


def _register_defaults(factory: ProviderFactory) -> None:
    factory.register(ProviderType.OPENAI, OpenAIProvider)
    factory.register(ProviderType.ANTHROPIC, AnthropicProvider)
    factory.register(ProviderType.GEMINI, GeminiProvider)
    factory.register(ProviderType.CEREBRAS, CerebrasProvider)
    factory.register(ProviderType.QWEN, QwenProvider)
    factory.register(ProviderType.OPENROUTER, OpenRouterProvider)
    for tag in LOCAL_PROVIDER_TYPES:
        factory.register(tag, LocalProvider)
    factory.register(ProviderType.FALLBACK, FallbackProvider)
    factory.register(ProviderType.LOADBALANCE, LoadBalanceProvider)
    factory.register(ProviderType.RACING, RacingProvider)


_default_factory: ProviderFactory | None = None
_default_lock = threading.Lock()


def default_factory() -> ProviderFactory:
    """The process-wide factory with every built-in provider type registered."""
    global _default_factory
    with _default_lock:
        if _default_factory is None:
            _default_factory = ProviderFactory()
            _register_defaults(_default_factory)
        return _default_factory
