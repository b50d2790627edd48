"""Rate-limit header parsing and tracker decisions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from providerkit.ratelimit import (
    RateLimitInfo,
    RateLimitTracker,
    parse_duration,
    parse_reset,
    parser_for,
)

pytestmark = pytest.mark.unit

_NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [("1s", 1.0), ("6m0s", 360.0), ("20ms", 0.02), ("1h2m3s", 3723.0), ("1.5s", 1.5)],
)
def test_parse_duration(raw: str, seconds: float) -> None:
    assert parse_duration(raw) == pytest.approx(seconds)


def test_parse_duration_rejects_other_text() -> None:
    assert parse_duration("soon") is None
    assert parse_duration("12") is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("30s", _NOW + timedelta(seconds=30)),
        ("12", _NOW + timedelta(seconds=12)),
        ("1767225660", datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc)),
        ("1767225660000", datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc)),
        ("2026-01-01T00:05:00Z", datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)),
    ],
)
def test_parse_reset_formats(raw: str, expected: datetime) -> None:
    assert parse_reset(raw, now=_NOW) == expected


def test_parse_reset_garbage_is_none() -> None:
    assert parse_reset("next tuesday", now=_NOW) is None
    assert parse_reset("", now=_NOW) is None


# =============================================================================
# Provider parsers
# =============================================================================


def test_openai_headers() -> None:
    headers = httpx.Headers(
        {
            "x-ratelimit-limit-requests": "500",
            "x-ratelimit-remaining-requests": "499",
            "x-ratelimit-reset-requests": "120ms",
            "x-ratelimit-limit-tokens": "30000",
            "x-ratelimit-remaining-tokens": "29000",
            "x-ratelimit-reset-tokens": "2s",
            "x-request-id": "req_1",
        }
    )

    info = parser_for("openai").parse(headers, "gpt-4o")

    assert (info.requests_limit, info.requests_remaining) == (500, 499)
    assert (info.tokens_limit, info.tokens_remaining) == (30000, 29000)
    assert info.requests_reset is not None
    assert info.request_id == "req_1"
    assert info.model == "gpt-4o"


def test_anthropic_headers() -> None:
    headers = httpx.Headers(
        {
            "anthropic-ratelimit-requests-limit": "50",
            "anthropic-ratelimit-requests-remaining": "0",
            "anthropic-ratelimit-requests-reset": "2026-01-01T00:01:00Z",
            "anthropic-ratelimit-input-tokens-limit": "40000",
            "anthropic-ratelimit-input-tokens-remaining": "100",
            "request-id": "req_a",
            "retry-after": "4",
        }
    )

    info = parser_for("anthropic").parse(headers)

    assert info.requests_limit == 50
    assert info.requests_remaining == 0
    assert info.requests_reset == datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc)
    assert info.input_tokens_limit == 40000
    assert info.input_tokens_remaining == 100
    assert info.retry_after_s == 4.0


def test_cerebras_minute_and_day_headers() -> None:
    headers = httpx.Headers(
        {
            "x-ratelimit-limit-requests-minute": "30",
            "x-ratelimit-remaining-requests-minute": "29",
            "x-ratelimit-limit-requests-day": "14400",
            "x-ratelimit-remaining-requests-day": "14000",
            "x-ratelimit-reset-requests-day": "33011.5",
            "cerebras-region": "us-east",
        }
    )

    info = parser_for("cerebras").parse(headers)

    assert (info.requests_limit, info.requests_remaining) == (30, 29)
    assert (info.daily_requests_limit, info.daily_requests_remaining) == (14400, 14000)
    assert info.daily_requests_reset is not None
    assert info.custom == {"cerebras-region": "us-east"}


def test_openrouter_credit_headers_mark_free_tier() -> None:
    headers = httpx.Headers({"x-ratelimit-limit": "5.0", "x-ratelimit-remaining": "2.5"})
    info = parser_for("openrouter").parse(headers)
    assert info.credits_limit == 5.0
    assert info.credits_remaining == 2.5
    assert info.requests_limit == 5
    assert info.is_free_tier


def test_qwen_falls_back_to_vendor_headers() -> None:
    headers = httpx.Headers(
        {"qwen-ratelimit-limit-requests": "60", "qwen-ratelimit-remaining-requests": "59"}
    )
    info = parser_for("qwen").parse(headers)
    assert (info.requests_limit, info.requests_remaining) == (60, 59)


def test_gemini_reads_only_retry_after() -> None:
    headers = httpx.Headers({"retry-after": "9", "x-ratelimit-limit-requests": "10"})
    info = parser_for("gemini").parse(headers)
    assert info.retry_after_s == 9.0
    assert info.requests_limit == 0


def test_unknown_provider_uses_openai_parser() -> None:
    assert parser_for("lmstudio") is parser_for("openai")


# =============================================================================
# Tracker
# =============================================================================


def _info(**kwargs: object) -> RateLimitInfo:
    return RateLimitInfo(provider="openai", model="m", **kwargs)  # type: ignore[arg-type]


def test_tracker_without_data_allows_requests() -> None:
    tracker = RateLimitTracker()
    assert tracker.can_make_request("m")
    assert tracker.wait_time("m") == 0.0


def test_exhausted_requests_block_until_reset() -> None:
    tracker = RateLimitTracker()
    reset = datetime.now(timezone.utc) + timedelta(seconds=20)
    tracker.update(_info(requests_limit=10, requests_remaining=0, requests_reset=reset))

    assert not tracker.can_make_request("m")
    assert 0 < tracker.wait_time("m") <= 20


def test_passed_reset_allows_requests() -> None:
    tracker = RateLimitTracker()
    reset = datetime.now(timezone.utc) - timedelta(seconds=1)
    tracker.update(_info(requests_limit=10, requests_remaining=0, requests_reset=reset))
    assert tracker.can_make_request("m")


def test_token_budget_considered_for_estimates() -> None:
    tracker = RateLimitTracker()
    reset = datetime.now(timezone.utc) + timedelta(seconds=30)
    tracker.update(
        _info(requests_limit=10, requests_remaining=5, tokens_limit=1000,
              tokens_remaining=100, tokens_reset=reset)
    )
    assert tracker.can_make_request("m", estimated_tokens=50)
    assert not tracker.can_make_request("m", estimated_tokens=500)


def test_retry_after_blocks() -> None:
    tracker = RateLimitTracker()
    tracker.update(_info(retry_after_s=5.0))
    assert not tracker.can_make_request("m")
    assert 4.0 < tracker.wait_time("m") <= 5.0


def test_other_models_are_unaffected() -> None:
    tracker = RateLimitTracker()
    tracker.update(_info(retry_after_s=5.0))
    assert tracker.can_make_request("other")


@pytest.mark.asyncio
async def test_check_and_wait_is_bounded() -> None:
    tracker = RateLimitTracker(max_wait_s=0.01)
    tracker.update(_info(retry_after_s=60.0))
    assert await tracker.check_and_wait("m") == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_check_and_wait_returns_immediately_when_allowed() -> None:
    assert await RateLimitTracker().check_and_wait("m") == 0.0
