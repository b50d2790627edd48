"""Shared provider-side error helpers.

Providers classify HTTP outcomes through ``error_from_response`` and transport
exceptions through ``wrap_provider_error`` so credential failover and virtual
fallback can branch on ``ErrorKind`` without brittle substring matching.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any

import httpx

from providerkit._http import parse_retry_after
from providerkit.errors import (
    ErrorKind,
    ProviderError,
    _walk_exception_chain,
    error_for_kind,
)

_QUOTA_MARKERS = ("insufficient_quota", "quota_exceeded", "resource_exhausted")
_AUTH_ERROR_TYPES = frozenset(
    {"invalid_api_key", "authentication_error", "permission_error"}
)
_NOT_FOUND_ERROR_TYPES = frozenset({"model_not_found", "not_found_error"})
_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _extract_retry_info_seconds(body: Any) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in error details.

    Gemini error bodies are shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    if not isinstance(body, dict):
        return None
    error: Any = body.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def _error_fields(body: Any) -> tuple[str, str, str]:
    """Return (message, type, code) from the common error envelope shapes."""
    if not isinstance(body, dict):
        return "", "", ""
    error = body.get("error", body)
    if isinstance(error, str):
        return error, "", ""
    if not isinstance(error, dict):
        return "", "", ""
    message = error.get("message") or body.get("message") or ""
    err_type = error.get("type") or error.get("status") or ""
    code = error.get("code") or ""
    return str(message), str(err_type), str(code)


def classify_status(status_code: int, body: Any = None) -> ErrorKind:
    """Map an HTTP status (and optional decoded error body) to an ErrorKind."""
    _, err_type, code = _error_fields(body)
    markers = f"{err_type} {code}".lower()
    if status_code in (401, 403) or err_type in _AUTH_ERROR_TYPES:
        return ErrorKind.AUTH
    if any(m in markers for m in _QUOTA_MARKERS) and status_code in (402, 403, 429):
        return ErrorKind.QUOTA
    if status_code == 402:
        return ErrorKind.QUOTA
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code == 404 or err_type in _NOT_FOUND_ERROR_TYPES:
        return ErrorKind.NOT_FOUND
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if 400 <= status_code < 500:
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.SERVER


def error_from_response(
    response: httpx.Response,
    *,
    provider: str,
    operation: str,
    body_text: str | None = None,
) -> ProviderError:
    """Build a classified ProviderError from a non-2xx HTTP response."""
    text = body_text if body_text is not None else _safe_text(response)
    body: Any = None
    if text:
        try:
            body = json.loads(text)
        except ValueError:
            body = None

    kind = classify_status(response.status_code, body)
    message, err_type, _ = _error_fields(body)
    if not message:
        message = text.strip()[:500] if text else response.reason_phrase
    if err_type:
        message = f"{err_type}: {message}"

    retry_after = parse_retry_after(response.headers.get("retry-after"))
    if retry_after is None:
        retry_after = _extract_retry_info_seconds(body)

    return error_for_kind(
        kind,
        message or f"HTTP {response.status_code}",
        provider=provider,
        operation=operation,
        status_code=response.status_code,
        retry_after_s=retry_after,
        hint=_auth_hint(provider, kind),
    )


def _safe_text(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""


def _auth_hint(provider: str, kind: ErrorKind) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    if kind is not ErrorKind.AUTH:
        return None
    env_var = f"{provider.upper()}_API_KEY" if provider else "API key"
    return f"Check credentials/permissions (try setting {env_var} or api_key=...)."


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    operation: str,
    message: str | None = None,
) -> ProviderError:
    """Map transport exceptions into a classified ProviderError."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already classified: fill in missing context only.
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        if exc.operation is None:
            exc.operation = operation
        return exc

    kind = ErrorKind.SERVER
    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, TimeoutError)):
            kind = ErrorKind.TIMEOUT
            break
        if isinstance(e, httpx.RequestError):
            kind = ErrorKind.NETWORK
            break
        if isinstance(e, (json.JSONDecodeError, KeyError, TypeError)):
            kind = ErrorKind.INVALID_RESPONSE
            break

    status_code = extract_status_code(exc)
    if status_code is not None and kind is ErrorKind.SERVER:
        kind = classify_status(status_code)

    cause = str(exc)
    msg = message or f"{operation} failed"
    return error_for_kind(
        kind,
        f"{msg}: {cause}" if cause else msg,
        provider=provider,
        operation=operation,
        status_code=status_code,
    )
