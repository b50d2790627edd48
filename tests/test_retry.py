"""Transport retry policy and single-flight deduplication."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from providerkit._singleflight import SingleFlight
from providerkit.errors import NetworkError, RateLimitError, ServerError
from providerkit.retry import NO_RETRY, RetryPolicy, is_transport_error, retry_async

pytestmark = pytest.mark.unit

_FAST = RetryPolicy(max_attempts=3, initial_delay_s=0.0, jitter=False)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (TimeoutError(), True),
        (NetworkError("down"), True),
        (ServerError("boom", status_code=500), False),
        (RateLimitError("slow down", status_code=429), False),
        (ValueError("nope"), False),
        (asyncio.CancelledError(), False),
    ],
)
def test_is_transport_error(exc: BaseException, expected: bool) -> None:
    assert is_transport_error(exc) is expected


def test_transport_error_found_in_cause_chain() -> None:
    try:
        try:
            raise httpx.ConnectError("refused")
        except httpx.ConnectError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert is_transport_error(outer)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"initial_delay_s": -1},
        {"backoff_multiplier": 0},
        {"max_delay_s": -0.1},
        {"max_elapsed_s": -1},
    ],
)
def test_policy_rejects_invalid_values(kwargs: dict) -> None:
    with pytest.raises(ValueError, match="RetryPolicy"):
        RetryPolicy(**kwargs)


@pytest.mark.asyncio
async def test_retry_recovers_from_connect_error() -> None:
    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise httpx.ConnectError("refused")
        return "ok"

    assert await retry_async(flaky, policy=_FAST) == "ok"
    assert attempts == 3


@pytest.mark.asyncio
async def test_server_errors_are_not_retried() -> None:
    attempts = 0

    async def failing() -> str:
        nonlocal attempts
        attempts += 1
        raise ServerError("boom", status_code=503)

    with pytest.raises(ServerError):
        await retry_async(failing, policy=_FAST)
    assert attempts == 1


@pytest.mark.asyncio
async def test_last_transport_error_surfaces_when_attempts_run_out() -> None:
    attempts = 0

    async def down() -> str:
        nonlocal attempts
        attempts += 1
        raise httpx.ConnectError(f"refused {attempts}")

    with pytest.raises(httpx.ConnectError, match="refused 3"):
        await retry_async(down, policy=_FAST)


@pytest.mark.asyncio
async def test_no_retry_policy_runs_once() -> None:
    attempts = 0

    async def down() -> str:
        nonlocal attempts
        attempts += 1
        raise httpx.ConnectError("refused")

    with pytest.raises(httpx.ConnectError):
        await retry_async(down, policy=NO_RETRY)
    assert attempts == 1


@pytest.mark.asyncio
async def test_single_flight_shares_one_computation() -> None:
    flight: SingleFlight[str, int] = SingleFlight()
    calls = 0

    async def work() -> int:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.05)
        return 42

    results = await asyncio.gather(*(flight.do("models", work) for _ in range(5)))

    assert results == [42] * 5
    assert calls == 1
    assert not flight.inflight("models")


@pytest.mark.asyncio
async def test_single_flight_propagates_failure_to_waiters() -> None:
    flight: SingleFlight[str, int] = SingleFlight()

    async def work() -> int:
        await asyncio.sleep(0.02)
        raise ServerError("boom", status_code=500)

    results = await asyncio.gather(
        flight.do("k", work), flight.do("k", work), return_exceptions=True
    )

    assert all(isinstance(r, ServerError) for r in results)
    assert not flight.inflight("k")
