"""Exception hierarchy for providerkit.

Every failure that crosses the provider boundary is a ``ProviderError`` carrying
a stable ``ErrorKind`` so credential failover, virtual-provider fallback and
callers can branch on classification instead of message text.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class ProviderKitError(Exception):
    """Base exception for all providerkit errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(ProviderKitError):
    """Provider configuration validation failed."""


class NotRegisteredError(ProviderKitError):
    """No constructor is registered for a provider type tag."""


class UnknownProviderError(ProviderKitError):
    """A virtual provider references a child name that is not in the registry."""


class ErrorKind(str, Enum):
    """Classification of provider failures."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    SERVER = "server"
    INVALID_RESPONSE = "invalid_response"
    TIMEOUT = "timeout"


class ProviderError(ProviderKitError):
    """A classified failure raised by a provider operation.

    Carries the provider tag, the operation name, the HTTP status when one was
    observed, and wraps the original cause via ``__cause__``.
    """

    kind: ErrorKind = ErrorKind.SERVER

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        operation: str | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        hint: str | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        if kind is not None:
            self.kind = kind
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.message = message

    @property
    def cause(self) -> BaseException | None:
        """The wrapped original exception, if any."""
        return self.__cause__

    def __str__(self) -> str:
        prefix = ""
        if self.provider:
            prefix = f"{self.provider}"
            if self.operation:
                prefix += f".{self.operation}"
            prefix += ": "
        status = f" (status={self.status_code})" if self.status_code else ""
        return f"{prefix}{self.message}{status}"


class AuthenticationError(ProviderError):
    """No usable credential, or the service rejected it (401/403)."""

    kind = ErrorKind.AUTH


class RateLimitError(ProviderError):
    """Rate limit exceeded (HTTP 429)."""

    kind = ErrorKind.RATE_LIMIT


class QuotaError(ProviderError):
    """Quota or credit balance exhausted for the credential in use."""

    kind = ErrorKind.QUOTA


class InvalidRequestError(ProviderError):
    """Options or schema were malformed, or the service rejected them (4xx)."""

    kind = ErrorKind.INVALID_REQUEST


class NotFoundError(ProviderError):
    """Model or endpoint not found (404)."""

    kind = ErrorKind.NOT_FOUND


class NetworkError(ProviderError):
    """Transport-level failure before a response was received."""

    kind = ErrorKind.NETWORK


class ServerError(ProviderError):
    """The service failed (5xx)."""

    kind = ErrorKind.SERVER


class InvalidResponseError(ProviderError):
    """The response could not be parsed."""

    kind = ErrorKind.INVALID_RESPONSE


class RequestTimeoutError(ProviderError):
    """The request or stream exceeded its deadline."""

    kind = ErrorKind.TIMEOUT


ERROR_CLASSES: dict[ErrorKind, type[ProviderError]] = {
    ErrorKind.AUTH: AuthenticationError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.QUOTA: QuotaError,
    ErrorKind.INVALID_REQUEST: InvalidRequestError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.SERVER: ServerError,
    ErrorKind.INVALID_RESPONSE: InvalidResponseError,
    ErrorKind.TIMEOUT: RequestTimeoutError,
}

# Kinds that credential rotation treats as "try the next credential".
CREDENTIAL_FAILOVER_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.AUTH, ErrorKind.QUOTA, ErrorKind.RATE_LIMIT}
)

# Kinds a fallback virtual provider moves past.
FALLBACK_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.AUTH,
        ErrorKind.QUOTA,
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVER,
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
    }
)


def error_for_kind(
    kind: ErrorKind,
    message: str,
    **kwargs: object,
) -> ProviderError:
    """Instantiate the ProviderError subclass matching *kind*."""
    cls = ERROR_CLASSES.get(kind, ProviderError)
    return cls(message, **kwargs)  # type: ignore[arg-type]


def error_kind(exc: BaseException) -> ErrorKind | None:
    """Return the classification of *exc*, or None for unclassified errors."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, ProviderError):
            return e.kind
    return None


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
