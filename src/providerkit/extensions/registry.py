"""Provider-tag -> extension registry."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from providerkit.errors import NotRegisteredError

if TYPE_CHECKING:
    from providerkit.extensions.base import ProviderExtension


class ExtensionRegistry:
    """Maps provider tags to their wire-format extensions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._extensions: dict[str, ProviderExtension] = {}

    def register(self, provider_type: str, extension: ProviderExtension) -> None:
        """Register (or replace) the extension for *provider_type*."""
        with self._lock:
            self._extensions[provider_type] = extension

    def get(self, provider_type: str) -> ProviderExtension:
        with self._lock:
            ext = self._extensions.get(provider_type)
        if ext is None:
            raise NotRegisteredError(
                f"No extension registered for provider type {provider_type!r}",
                hint=f"Registered types: {', '.join(sorted(self._extensions)) or 'none'}",
            )
        return ext

    def has(self, provider_type: str) -> bool:
        with self._lock:
            return provider_type in self._extensions

    def list(self) -> dict[str, ProviderExtension]:
        with self._lock:
            return dict(self._extensions)


_default_registry = ExtensionRegistry()


def default_registry() -> ExtensionRegistry:
    """The process-wide registry populated at import time."""
    return _default_registry
