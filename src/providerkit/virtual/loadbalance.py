"""Load-balancing provider: spread requests across children."""

from __future__ import annotations

from enum import Enum
import itertools
import logging
import random
import time
from typing import TYPE_CHECKING, ClassVar

from providerkit.errors import ConfigurationError, ErrorKind, error_kind
from providerkit.streaming import ChatStream
from providerkit.virtual.base import VirtualProvider

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from providerkit.config import ProviderConfig
    from providerkit.metrics import MetricsSink
    from providerkit.providers.base import Provider
    from providerkit.types import Chunk, GenerateOptions

log = logging.getLogger(__name__)

#: Seconds a rate-limited child is skipped when the error carries no hint.
DEFAULT_BACKOFF_S = 30.0


class Strategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    LEAST_LOADED = "least_loaded"


class LoadBalanceProvider(VirtualProvider):
    """Dispatch each request to one child chosen by ``strategy``.

    Children that answered with a rate limit are skipped until their back-off
    window passes. When every child is backing off, the one whose window ends
    first is used. Errors are not retried on another child.
    """

    default_description: ClassVar[str] = "Distributes requests across providers"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        metrics_sink: MetricsSink | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(config, metrics_sink=metrics_sink)
        raw = str(self._setting("strategy", Strategy.ROUND_ROBIN.value) or "round_robin")
        try:
            self.strategy = Strategy(raw.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown load-balance strategy {raw!r}",
                hint=f"Use one of: {', '.join(s.value for s in Strategy)}.",
            ) from None
        self.backoff_s = float(self._setting("backoff_s", DEFAULT_BACKOFF_S))
        self._counter = itertools.count()
        self._rng = rng or random.Random()
        self._in_flight: dict[str, int] = {}
        self._backoff_until: dict[str, float] = {}

    # --- Selection ---

    def in_flight(self, name: str) -> int:
        with self._lock:
            return self._in_flight.get(name, 0)

    def select(self) -> Provider:
        """Choose the child for the next request."""
        providers = self._require_providers()
        now = time.monotonic()
        with self._lock:
            ready = [p for p in providers if self._backoff_until.get(p.name, 0.0) <= now]
            if not ready:
                return min(providers, key=lambda p: self._backoff_until.get(p.name, 0.0))
            if self.strategy is Strategy.RANDOM:
                return self._rng.choice(ready)
            if self.strategy is Strategy.LEAST_LOADED:
                return min(ready, key=lambda p: self._in_flight.get(p.name, 0))
            # Round robin over the full list so skipped children keep their slot.
            for _ in range(len(providers)):
                candidate = providers[next(self._counter) % len(providers)]
                if candidate in ready:
                    return candidate
            return ready[0]

    def _acquire(self, name: str) -> None:
        with self._lock:
            self._in_flight[name] = self._in_flight.get(name, 0) + 1

    def _release(self, name: str) -> None:
        with self._lock:
            self._in_flight[name] = max(0, self._in_flight.get(name, 0) - 1)

    def _back_off(self, name: str, retry_after_s: float | None) -> None:
        delay = retry_after_s if retry_after_s and retry_after_s > 0 else self.backoff_s
        with self._lock:
            self._backoff_until[name] = time.monotonic() + delay
        log.info("Load balancer %s skipping %s for %.1fs", self.name, name, delay)

    # --- Generation ---

    async def generate_chat_completion(self, options: GenerateOptions) -> ChatStream:
        provider = self.select()
        self._check_cancelled(options)
        self._metrics.record_request(options.model)
        self._acquire(provider.name)
        started = time.monotonic()
        try:
            inner = await provider.generate_chat_completion(options)
        except Exception as exc:
            self._release(provider.name)
            if error_kind(exc) is ErrorKind.RATE_LIMIT:
                self._back_off(provider.name, getattr(exc, "retry_after_s", None))
            self._metrics.record_error(exc, options.model)
            raise
        self._metrics.record_success(time.monotonic() - started, model=options.model)

        released = False

        async def release() -> None:
            nonlocal released
            try:
                await inner.aclose()
            finally:
                if not released:
                    released = True
                    self._release(provider.name)

        async def tagged() -> AsyncIterator[Chunk]:
            async for chunk in inner:
                chunk.metadata["loadbalance_provider"] = provider.name
                yield chunk

        return ChatStream(tagged(), on_close=release, context=options.context, provider=self.name)
