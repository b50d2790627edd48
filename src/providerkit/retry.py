"""Bounded async retry for transport-level failures.

Only failures that happened before a response arrived (connection errors,
timeouts) are retried. HTTP-level failures, 5xx included, surface at once so
virtual providers can make the fallback decision.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from providerkit.errors import ErrorKind, ProviderError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

_TRANSPORT_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT})


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional jitter."""

    max_attempts: int = 2
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 5.0
    jitter: bool = True  # "full jitter" when enabled
    max_elapsed_s: float | None = 15.0

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")


NO_RETRY = RetryPolicy(max_attempts=1)


def is_transport_error(exc: BaseException) -> bool:
    """Return True for failures that occurred before any HTTP response.

    Cancellation is never a transport error.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, ProviderError):
        return exc.kind in _TRANSPORT_KINDS
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, httpx.TimeoutException, httpx.RequestError)):
            return True
    return False


def _compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    # retry_index starts at 1 for the first retry sleep.
    base = policy.initial_delay_s * (
        policy.backoff_multiplier ** max(0, retry_index - 1)
    )
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    return random.random() * base  # noqa: S311


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = is_transport_error,
) -> T:
    """Run an async factory with bounded retries."""
    start = time.monotonic()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise

            delay = _compute_backoff_delay(policy, retry_index=attempt)
            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            logger.debug(
                "Retrying after transport error (attempt %d/%d, sleep %.2fs): %s",
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover
