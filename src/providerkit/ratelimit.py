"""Rate-limit header parsing and pre-request throttling.

Each provider reports its limits in its own headers. Parsers normalize them
into ``RateLimitInfo``; a provider's ``RateLimitTracker`` keeps the latest
view per model and lets the request path wait briefly when the view says the
next request would be rejected.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
import threading
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from providerkit._http import parse_retry_after

if TYPE_CHECKING:
    from collections.abc import Mapping

log = logging.getLogger(__name__)

DEFAULT_MAX_WAIT_S = 30.0

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|h|m|s))+$")


@dataclass
class RateLimitInfo:
    """Normalized rate-limit view for one provider/model."""

    provider: str
    model: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    requests_limit: int = 0
    requests_remaining: int = 0
    requests_reset: datetime | None = None
    tokens_limit: int = 0
    tokens_remaining: int = 0
    tokens_reset: datetime | None = None
    input_tokens_limit: int = 0
    input_tokens_remaining: int = 0
    input_tokens_reset: datetime | None = None
    output_tokens_limit: int = 0
    output_tokens_remaining: int = 0
    output_tokens_reset: datetime | None = None
    daily_requests_limit: int = 0
    daily_requests_remaining: int = 0
    daily_requests_reset: datetime | None = None
    credits_limit: float = 0.0
    credits_remaining: float = 0.0
    is_free_tier: bool = False
    request_id: str = ""
    retry_after_s: float = 0.0
    custom: dict[str, Any] = field(default_factory=dict)

    def reset_times(self) -> list[datetime]:
        return [
            t
            for t in (
                self.requests_reset,
                self.tokens_reset,
                self.input_tokens_reset,
                self.output_tokens_reset,
                self.daily_requests_reset,
            )
            if t is not None
        ]


# --- Value helpers ---


def _int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(value.strip())
    except ValueError:
        try:
            return int(float(value.strip()))
        except ValueError:
            return None


def _float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def parse_duration(value: str) -> float | None:
    """Parse Go-style durations such as ``"1s"``, ``"6m0s"`` or ``"20ms"``."""
    value = value.strip()
    if not _DURATION_RE.match(value):
        return None
    total = 0.0
    for amount, unit in _DURATION_PART_RE.findall(value):
        n = float(amount)
        total += {"ms": n / 1000, "s": n, "m": n * 60, "h": n * 3600}[unit]
    return total


def parse_reset(value: str | None, now: datetime | None = None) -> datetime | None:
    """Parse a reset header given as a duration, seconds, epoch or RFC 3339."""
    if value is None or not value.strip():
        return None
    value = value.strip()
    now = now or datetime.now(timezone.utc)
    seconds = parse_duration(value)
    if seconds is not None:
        return now + timedelta(seconds=seconds)
    number = _float(value)
    if number is not None:
        if number > 1e12:  # epoch milliseconds
            return datetime.fromtimestamp(number / 1000, tz=timezone.utc)
        if number > 1e9:  # epoch seconds
            return datetime.fromtimestamp(number, tz=timezone.utc)
        return now + timedelta(seconds=number)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _retry_after(headers: Mapping[str, str], info: RateLimitInfo) -> None:
    seconds = parse_retry_after(headers.get("retry-after"))
    if seconds is not None:
        info.retry_after_s = seconds


# --- Parsers ---


class RateLimitParser(Protocol):
    provider: str

    def parse(self, headers: Mapping[str, str], model: str = "") -> RateLimitInfo: ...  # noqa: D102


class OpenAIParser:
    """``x-ratelimit-{limit,remaining,reset}-{requests,tokens}`` headers."""

    provider: ClassVar[str] = "openai"

    def parse(self, headers: Mapping[str, str], model: str = "") -> RateLimitInfo:
        info = RateLimitInfo(provider=self.provider, model=model)
        self._standard(headers, info)
        info.request_id = headers.get("x-request-id", "")
        _retry_after(headers, info)
        return info

    @staticmethod
    def _standard(headers: Mapping[str, str], info: RateLimitInfo) -> None:
        info.requests_limit = _int(headers.get("x-ratelimit-limit-requests")) or 0
        info.requests_remaining = _int(headers.get("x-ratelimit-remaining-requests")) or 0
        info.requests_reset = parse_reset(headers.get("x-ratelimit-reset-requests"))
        info.tokens_limit = _int(headers.get("x-ratelimit-limit-tokens")) or 0
        info.tokens_remaining = _int(headers.get("x-ratelimit-remaining-tokens")) or 0
        info.tokens_reset = parse_reset(headers.get("x-ratelimit-reset-tokens"))


class AnthropicParser:
    """``anthropic-ratelimit-*`` headers with RFC 3339 reset timestamps."""

    provider: ClassVar[str] = "anthropic"

    def parse(self, headers: Mapping[str, str], model: str = "") -> RateLimitInfo:
        info = RateLimitInfo(provider=self.provider, model=model)
        for kind in ("requests", "tokens", "input_tokens", "output_tokens"):
            prefix = f"anthropic-ratelimit-{kind.replace('_', '-')}"
            setattr(info, f"{kind}_limit", _int(headers.get(f"{prefix}-limit")) or 0)
            setattr(
                info, f"{kind}_remaining", _int(headers.get(f"{prefix}-remaining")) or 0
            )
            setattr(info, f"{kind}_reset", parse_reset(headers.get(f"{prefix}-reset")))
        info.request_id = headers.get("request-id", "")
        _retry_after(headers, info)
        return info


class GeminiParser:
    """Gemini reports no limit headers; only ``retry-after`` on 429."""

    provider: ClassVar[str] = "gemini"

    def parse(self, headers: Mapping[str, str], model: str = "") -> RateLimitInfo:
        info = RateLimitInfo(provider=self.provider, model=model)
        _retry_after(headers, info)
        return info


class CerebrasParser:
    """Per-minute and per-day limits, resets in (fractional) seconds."""

    provider: ClassVar[str] = "cerebras"

    def parse(self, headers: Mapping[str, str], model: str = "") -> RateLimitInfo:
        info = RateLimitInfo(provider=self.provider, model=model)
        info.requests_limit = _int(headers.get("x-ratelimit-limit-requests-minute")) or 0
        info.requests_remaining = (
            _int(headers.get("x-ratelimit-remaining-requests-minute")) or 0
        )
        info.requests_reset = parse_reset(headers.get("x-ratelimit-reset-requests-minute"))
        info.tokens_limit = _int(headers.get("x-ratelimit-limit-tokens-minute")) or 0
        info.tokens_remaining = _int(headers.get("x-ratelimit-remaining-tokens-minute")) or 0
        info.tokens_reset = parse_reset(headers.get("x-ratelimit-reset-tokens-minute"))
        info.daily_requests_limit = _int(headers.get("x-ratelimit-limit-requests-day")) or 0
        info.daily_requests_remaining = (
            _int(headers.get("x-ratelimit-remaining-requests-day")) or 0
        )
        info.daily_requests_reset = parse_reset(
            headers.get("x-ratelimit-reset-requests-day")
        )
        info.request_id = headers.get("cerebras-request-id", "")
        for name in ("cerebras-processing-time", "cerebras-region"):
            if name in headers:
                info.custom[name] = headers[name]
        _retry_after(headers, info)
        return info


class OpenRouterParser:
    """Credit-style limits; fractional values are credits, integers requests."""

    provider: ClassVar[str] = "openrouter"

    def parse(self, headers: Mapping[str, str], model: str = "") -> RateLimitInfo:
        info = RateLimitInfo(provider=self.provider, model=model)
        limit = _float(headers.get("x-ratelimit-limit"))
        if limit is not None:
            info.credits_limit = limit
            if limit.is_integer():
                info.requests_limit = int(limit)
        remaining = _float(headers.get("x-ratelimit-remaining"))
        if remaining is not None:
            info.credits_remaining = remaining
            if remaining.is_integer():
                info.requests_remaining = int(remaining)
        reset_ms = _int(headers.get("x-ratelimit-reset"))
        if reset_ms is not None:
            reset = datetime.fromtimestamp(reset_ms / 1000, tz=timezone.utc)
            info.requests_reset = reset
            info.tokens_reset = reset
        if (requests := _int(headers.get("x-ratelimit-requests"))) is not None:
            info.requests_limit = requests
        if (tokens := _int(headers.get("x-ratelimit-tokens"))) is not None:
            info.tokens_limit = tokens
        if 0 < info.credits_limit <= 10.0:
            info.is_free_tier = True
        free = headers.get("x-ratelimit-free-tier")
        if free is not None and free.strip().lower() in ("true", "false", "1", "0"):
            info.is_free_tier = free.strip().lower() in ("true", "1")
        info.request_id = headers.get("x-request-id", "")
        _retry_after(headers, info)
        return info


class QwenParser:
    """OpenAI-style headers, with ``qwen-ratelimit-*`` filling any gaps."""

    provider: ClassVar[str] = "qwen"

    def parse(self, headers: Mapping[str, str], model: str = "") -> RateLimitInfo:
        info = RateLimitInfo(provider=self.provider, model=model)
        OpenAIParser._standard(headers, info)
        for kind in ("requests", "tokens"):
            if not getattr(info, f"{kind}_limit"):
                setattr(
                    info,
                    f"{kind}_limit",
                    _int(headers.get(f"qwen-ratelimit-limit-{kind}")) or 0,
                )
            if not getattr(info, f"{kind}_remaining"):
                setattr(
                    info,
                    f"{kind}_remaining",
                    _int(headers.get(f"qwen-ratelimit-remaining-{kind}")) or 0,
                )
            if getattr(info, f"{kind}_reset") is None:
                setattr(
                    info,
                    f"{kind}_reset",
                    parse_reset(headers.get(f"qwen-ratelimit-reset-{kind}")),
                )
        info.request_id = headers.get("x-request-id", "") or headers.get(
            "qwen-request-id", ""
        )
        for name, value in headers.items():
            if name.lower().startswith(("dashscope-ratelimit-", "x-dashscope-ratelimit-")):
                info.custom[name.lower()] = value
        _retry_after(headers, info)
        return info


PARSERS: dict[str, RateLimitParser] = {
    p.provider: p
    for p in (
        OpenAIParser(),
        AnthropicParser(),
        GeminiParser(),
        CerebrasParser(),
        OpenRouterParser(),
        QwenParser(),
    )
}


def parser_for(provider_type: str) -> RateLimitParser:
    """Parser for a provider tag; OpenAI-style for anything unknown."""
    return PARSERS.get(provider_type, PARSERS["openai"])


# --- Tracker ---


class RateLimitTracker:
    """Latest rate-limit view per model for one provider."""

    def __init__(self, *, max_wait_s: float = DEFAULT_MAX_WAIT_S) -> None:
        self.max_wait_s = max_wait_s
        self._lock = threading.Lock()
        self._info: dict[str, RateLimitInfo] = {}
        self.last_update: datetime | None = None

    def update(self, info: RateLimitInfo | None) -> None:
        if info is None:
            return
        with self._lock:
            self._info[info.model] = info
            self.last_update = datetime.now(timezone.utc)

    def get(self, model: str) -> RateLimitInfo | None:
        with self._lock:
            return self._info.get(model)

    def can_make_request(self, model: str, estimated_tokens: int = 0) -> bool:
        info = self.get(model)
        if info is None:
            return True
        now = datetime.now(timezone.utc)
        if info.retry_after_s > 0 and now < info.timestamp + timedelta(
            seconds=info.retry_after_s
        ):
            return False
        if info.requests_reset is not None and now >= info.requests_reset:
            return True
        if info.requests_limit > 0 and info.requests_remaining <= 0:
            return False
        if estimated_tokens > 0:
            if (
                info.tokens_reset is not None
                and now < info.tokens_reset
                and info.tokens_limit > 0
                and info.tokens_remaining < estimated_tokens
            ):
                return False
            if (
                info.input_tokens_reset is not None
                and now < info.input_tokens_reset
                and info.input_tokens_limit > 0
                and info.input_tokens_remaining < estimated_tokens
            ):
                return False
        if (
            info.daily_requests_reset is not None
            and now < info.daily_requests_reset
            and info.daily_requests_limit > 0
            and info.daily_requests_remaining <= 0
        ):
            return False
        return not (info.credits_limit > 0 and info.credits_remaining <= 0)

    def wait_time(self, model: str) -> float:
        """Seconds until the earliest pending reset (or retry-after)."""
        info = self.get(model)
        if info is None:
            return 0.0
        now = datetime.now(timezone.utc)
        if info.retry_after_s > 0:
            remaining = (
                info.timestamp + timedelta(seconds=info.retry_after_s) - now
            ).total_seconds()
            return max(0.0, remaining)
        pending = [t for t in info.reset_times() if t > now]
        if not pending:
            return 0.0
        return (min(pending) - now).total_seconds()

    async def check_and_wait(self, model: str, estimated_tokens: int = 0) -> float:
        """Sleep until a request is allowed, bounded by ``max_wait_s``.

        Returns the seconds slept. The caller proceeds after the bound even if
        the view still says no; the server's answer is authoritative.
        """
        if self.can_make_request(model, estimated_tokens):
            return 0.0
        wait = min(self.wait_time(model), self.max_wait_s)
        if wait <= 0:
            return 0.0
        log.debug("Rate limit reached for %s; waiting %.2fs", model, wait)
        await asyncio.sleep(wait)
        return wait
