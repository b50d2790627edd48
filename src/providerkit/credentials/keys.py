"""API key pool with round-robin rotation and failover.

Each request takes the key at the cursor and advances it, so load spreads
evenly across keys. Keys that fail with an auth, quota or rate-limit error are
put into an exponential back-off window (1s, 2s, 4s... capped at 60s) and are
skipped while any healthy key remains.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import threading
import time
from typing import TYPE_CHECKING, TypeVar

from providerkit._http import mask_secret
from providerkit.errors import (
    CREDENTIAL_FAILOVER_KINDS,
    AuthenticationError,
    error_kind,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = logging.getLogger(__name__)

MAX_BACKOFF_S = 60.0
_UNHEALTHY_AFTER_FAILURES = 3


@dataclass
class KeyHealth:
    failure_count: int = 0
    last_failure: float = 0.0
    last_success: float = 0.0
    backoff_until: float = 0.0
    healthy: bool = True

    def in_backoff(self, now: float) -> bool:
        return now < self.backoff_until


class KeyPool:
    """Ordered API keys with a shared rotation cursor."""

    def __init__(self, provider: str, keys: list[str]) -> None:
        self.provider = provider
        self._keys = list(dict.fromkeys(k for k in keys if k))
        self._cursor = 0
        self._lock = threading.Lock()
        self._health = {k: KeyHealth() for k in self._keys}

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    def health(self, key: str) -> KeyHealth:
        with self._lock:
            h = self._health[key]
            return KeyHealth(**vars(h))

    def next_key(self, *, exclude: set[str] | None = None) -> str:
        """Return the key at the cursor and advance it.

        Keys in back-off, and keys in *exclude*, are skipped while another key
        is available. When every candidate is backing off, the one whose
        window ends first is returned.
        """
        with self._lock:
            if not self._keys:
                raise AuthenticationError(
                    f"No API keys configured for {self.provider}",
                    provider=self.provider,
                    operation="next_key",
                )
            now = time.monotonic()
            n = len(self._keys)
            candidates: list[str] = []
            for offset in range(n):
                key = self._keys[(self._cursor + offset) % n]
                if exclude and key in exclude:
                    continue
                candidates.append(key)
                if not self._health[key].in_backoff(now):
                    self._cursor = (self._keys.index(key) + 1) % n
                    return key
            if not candidates:
                candidates = list(self._keys)
            key = min(candidates, key=lambda k: self._health[k].backoff_until)
            self._cursor = (self._keys.index(key) + 1) % n
            return key

    def report_success(self, key: str) -> None:
        with self._lock:
            h = self._health.get(key)
            if h is None:
                return
            h.failure_count = 0
            h.backoff_until = 0.0
            h.healthy = True
            h.last_success = time.monotonic()

    def report_failure(self, key: str, exc: BaseException | None = None) -> None:
        with self._lock:
            h = self._health.get(key)
            if h is None:
                return
            now = time.monotonic()
            h.failure_count += 1
            h.last_failure = now
            exponent = min(h.failure_count - 1, 6)
            h.backoff_until = now + min(float(1 << exponent), MAX_BACKOFF_S)
            if h.failure_count >= _UNHEALTHY_AFTER_FAILURES:
                h.healthy = False
        log.warning(
            "API key %s for %s failed (%s); backing off",
            mask_secret(key),
            self.provider,
            exc,
        )

    async def execute_with_failover(
        self, operation: Callable[[str], Awaitable[T]]
    ) -> T:
        """Run *operation* with a key, failing over on credential-class errors.

        Auth, quota and rate-limit errors move on to the next key; any other
        error surfaces immediately. After one full traversal the last error is
        re-raised.
        """
        tried: set[str] = set()
        last_exc: BaseException | None = None
        for _ in range(max(1, len(self._keys))):
            key = self.next_key(exclude=tried)
            if key in tried:
                break
            tried.add(key)
            try:
                result = await operation(key)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if error_kind(exc) not in CREDENTIAL_FAILOVER_KINDS:
                    raise
                self.report_failure(key, exc)
                last_exc = exc
                continue
            self.report_success(key)
            return result

        if last_exc is None:
            raise RuntimeError("key rotation ended without an attempt")  # pragma: no cover
        raise last_exc
