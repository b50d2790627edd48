"""Small HTTP-related constants and helpers shared across providerkit.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

from email.utils import parsedate_to_datetime
import time
from typing import Any

import httpx

DEFAULT_TIMEOUT_S = 60.0
USER_AGENT = "ai-provider-kit-python"

_SENSITIVE_HEADERS = frozenset(
    {"authorization", "x-api-key", "x-goog-api-key", "proxy-authorization"}
)


def build_client(
    timeout_s: float | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the async HTTP client used by a provider."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_s or DEFAULT_TIMEOUT_S, connect=10.0),
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


def mask_secret(value: str | None) -> str:
    """Mask a credential for logs, keeping a short recognizable suffix."""
    if not value:
        return ""
    if len(value) <= 8:
        return "***"
    return f"***{value[-4:]}"


def redact_headers(headers: dict[str, str] | httpx.Headers) -> dict[str, Any]:
    """Return a copy of *headers* safe to log."""
    return {
        k: ("***" if k.lower() in _SENSITIVE_HEADERS else v)
        for k, v in dict(headers).items()
    }


def parse_retry_after(raw: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not raw or not raw.strip():
        return None
    raw = raw.strip()
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else None
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())
