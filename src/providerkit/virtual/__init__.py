"""Providers composed of other providers."""

from providerkit.virtual.base import VirtualProvider
from providerkit.virtual.fallback import FallbackProvider
from providerkit.virtual.loadbalance import LoadBalanceProvider, Strategy
from providerkit.virtual.racing import (
    PerformanceTracker,
    ProviderRef,
    ProviderStats,
    RaceStrategy,
    RacingProvider,
    VirtualModel,
)

__all__ = [
    "FallbackProvider",
    "LoadBalanceProvider",
    "PerformanceTracker",
    "ProviderRef",
    "ProviderStats",
    "RaceStrategy",
    "RacingProvider",
    "Strategy",
    "VirtualModel",
    "VirtualProvider",
]
