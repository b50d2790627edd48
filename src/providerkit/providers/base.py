"""Provider protocol and the shared HTTP provider implementation."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import json
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, TypeVar, runtime_checkable

import httpx
from pydantic import SecretStr

from providerkit._http import build_client, redact_headers
from providerkit.credentials import TOKEN_ENDPOINTS, KeyPool, OAuthManager, TokenEndpoint
from providerkit.errors import (
    AuthenticationError,
    ConfigurationError,
    InvalidRequestError,
    NetworkError,
    ProviderError,
)
from providerkit.extensions import default_registry
from providerkit.metrics import MetricsRecorder
from providerkit.models import ModelCache, ModelMetadataRegistry
from providerkit.providers._errors import error_from_response, wrap_provider_error
from providerkit.ratelimit import RateLimitTracker, parser_for
from providerkit.retry import RetryPolicy, retry_async
from providerkit.standard import StandardRequest, validate_tool_results
from providerkit.streaming import ChatStream, StreamState, read_sse_chunks
from providerkit.types import HealthStatus, Model, ToolFormat

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from providerkit.config import AuthConfig, OAuthCredentialSet, ProviderConfig
    from providerkit.context import CancelToken
    from providerkit.extensions import ProviderExtension
    from providerkit.metrics import MetricsSink
    from providerkit.types import Chunk, GenerateOptions, ProviderMetrics

T = TypeVar("T")

log = logging.getLogger(__name__)

#: Transport-level retries for idempotent calls and the initial send.
DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=2, initial_delay_s=0.25, max_elapsed_s=10.0)


@runtime_checkable
class Provider(Protocol):
    """The capability surface shared by concrete and virtual providers."""

    @property
    def name(self) -> str: ...

    @property
    def type(self) -> str: ...

    @property
    def description(self) -> str: ...

    async def get_models(self) -> list[Model]: ...

    def get_default_model(self) -> str: ...

    def supports_streaming(self) -> bool: ...

    def supports_tool_calling(self) -> bool: ...

    def supports_responses_api(self) -> bool: ...

    def get_tool_format(self) -> ToolFormat: ...

    async def authenticate(self, auth: AuthConfig) -> None: ...

    def is_authenticated(self) -> bool: ...

    async def logout(self) -> None: ...

    def configure(self, config: ProviderConfig) -> None: ...

    def get_config(self) -> ProviderConfig: ...

    async def generate_chat_completion(self, options: GenerateOptions) -> ChatStream:
        """Start a chat completion and return its chunk stream."""
        ...

    async def invoke_server_tool(self, name: str, params: dict[str, Any]) -> Any: ...

    async def health_check(self) -> HealthStatus: ...

    def get_metrics(self) -> ProviderMetrics: ...


class BaseProvider:
    """HTTP provider driven by a wire-format extension.

    Subclasses set the class-level defaults and override the small hooks
    (``_chat_url``, ``_auth_headers``, ``_parse_models``) where the vendor
    deviates from the OpenAI shape.
    """

    provider_type: ClassVar[str] = ""
    default_base_url: ClassVar[str] = ""
    default_model: ClassVar[str] = ""
    default_description: ClassVar[str] = ""
    tool_format: ClassVar[ToolFormat] = ToolFormat.OPENAI
    chat_path: ClassVar[str] = "/chat/completions"
    models_path: ClassVar[str] = "/models"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        extension: ProviderExtension | None = None,
        metrics_sink: MetricsSink | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self._lock = threading.RLock()
        self._config = config.clone()
        if self.provider_type and self._config.type != self.provider_type:
            log.debug(
                "Config type %r served by %s", self._config.type, type(self).__name__
            )
        self._client = build_client(transport=transport)
        self.extension = extension or default_registry().get(self._config.type)
        self._retry_policy = retry_policy
        self._metrics = MetricsRecorder(self._config.name, self._config.type, metrics_sink)
        self._rate_limits = RateLimitTracker()
        self._rate_limit_parser = parser_for(self._config.type)
        self._model_cache = ModelCache()
        self._model_metadata = ModelMetadataRegistry(self._config.type)
        self._keys: KeyPool
        self._oauth: OAuthManager
        self._build_credentials()

    # --- Identity ---

    @property
    def name(self) -> str:
        with self._lock:
            return self._config.name

    @property
    def type(self) -> str:
        with self._lock:
            return self._config.type

    @property
    def description(self) -> str:
        with self._lock:
            return self._config.description or self.default_description

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    # --- Capabilities ---

    def get_default_model(self) -> str:
        with self._lock:
            return self._config.default_model or self.default_model

    def supports_streaming(self) -> bool:
        with self._lock:
            return self._config.supports_streaming

    def supports_tool_calling(self) -> bool:
        with self._lock:
            return self._config.supports_tool_calling

    def supports_responses_api(self) -> bool:
        with self._lock:
            return self._config.supports_responses_api

    def get_tool_format(self) -> ToolFormat:
        with self._lock:
            raw = self._config.tool_format
        if raw:
            try:
                return ToolFormat(raw)
            except ValueError:
                log.debug("Unknown tool format %r; using %s", raw, self.tool_format.value)
        return self.tool_format

    # --- Configuration ---

    def configure(self, config: ProviderConfig) -> None:
        """Replace the configuration; credentials are rebuilt from it."""
        with self._lock:
            self._config = config.clone()
            self._metrics.provider = self._config.name
            self._build_credentials()
        self._model_cache.invalidate()

    def get_config(self) -> ProviderConfig:
        with self._lock:
            return self._config.clone()

    @property
    def base_url(self) -> str:
        with self._lock:
            return self._config.base_url or self.default_base_url

    def _setting(self, key: str, default: Any = None) -> Any:
        """A free-form ``provider_config`` value."""
        with self._lock:
            return self._config.provider_config.get(key, default)

    def _build_credentials(self) -> None:
        self._keys = KeyPool(self._config.name, self._config.all_api_keys())
        self._oauth = OAuthManager(
            self._config.name,
            self._config.oauth_credentials,
            endpoint=self._token_endpoint(),
            client=self._client,
            metrics=self._metrics,
        )

    def _token_endpoint(self) -> TokenEndpoint | None:
        custom = self._config.provider_config.get("token_url")
        default = TOKEN_ENDPOINTS.get(self._config.type)
        if custom:
            return TokenEndpoint(
                str(custom),
                default_client_id=default.default_client_id if default else "",
                json_body=default.json_body if default else False,
            )
        return default

    # --- Authentication ---

    async def authenticate(self, auth: AuthConfig) -> None:
        """Install an API key or OAuth credential set."""
        if auth.method == "api_key":
            if not auth.api_key.strip():
                raise AuthenticationError(
                    "API key is empty", provider=self.name, operation="authenticate"
                )
            with self._lock:
                self._config.api_key = SecretStr(auth.api_key.strip())
                self._keys = KeyPool(self._config.name, self._config.all_api_keys())
        elif auth.method == "oauth":
            if auth.oauth is None:
                raise AuthenticationError(
                    "OAuth authentication requires a credential set",
                    provider=self.name,
                    operation="authenticate",
                )
            with self._lock:
                creds = [c for c in self._config.oauth_credentials if c.id != auth.oauth.id]
                self._config.oauth_credentials = [*creds, auth.oauth]
                self._oauth.add(auth.oauth)
        else:
            raise ConfigurationError(
                f"Unsupported authentication method {auth.method!r}",
                hint="Use 'api_key' or 'oauth'.",
            )
        log.debug("Authenticated %s via %s", self.name, auth.method)

    def is_authenticated(self) -> bool:
        with self._lock:
            if not self._config.requires_credentials:
                return True
            return bool(len(self._keys) or len(self._oauth))

    async def logout(self) -> None:
        """Drop every credential held in memory."""
        with self._lock:
            self._config.api_key = None
            self._config.api_keys = []
            self._config.oauth_credentials = []
            self._build_credentials()
        self._model_cache.invalidate()

    async def _with_credentials(self, operation: Callable[[dict[str, str]], Awaitable[T]]) -> T:
        """Run *operation* with auth headers, failing over across credentials."""
        with self._lock:
            oauth, keys = self._oauth, self._keys
            requires = self._config.requires_credentials
        if len(oauth):
            return await oauth.execute_with_failover(
                lambda cred, token: operation(self._auth_headers(token, oauth=cred))
            )
        if len(keys):
            return await keys.execute_with_failover(
                lambda key: operation(self._auth_headers(key))
            )
        if not requires:
            return await operation(self._base_headers())
        raise AuthenticationError(
            f"No credentials configured for {self.name}",
            provider=self.name,
            operation="authenticate",
            hint=f"Set an API key for {self.type} or pass api_key=...",
        )

    def _base_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _auth_headers(
        self, token: str, *, oauth: OAuthCredentialSet | None = None
    ) -> dict[str, str]:
        return {**self._base_headers(), "Authorization": f"Bearer {token}"}

    # --- Chat completion ---

    async def generate_chat_completion(self, options: GenerateOptions) -> ChatStream:
        """Send a chat request and return its chunk stream.

        ``stream=False`` yields exactly one ``done=True`` chunk. ``stream=True``
        yields text deltas followed by a terminal chunk with tool calls and
        usage.
        """
        request = StandardRequest.from_options(options, default_model=self.get_default_model())
        if not request.messages:
            raise InvalidRequestError(
                "at least one message or a prompt is required",
                provider=self.name,
                operation="generate",
            )
        if not request.model:
            raise InvalidRequestError(
                "no model given and the provider has no default model",
                provider=self.name,
                operation="generate",
            )
        validate_tool_results(request.messages, provider=self.name)
        with self._lock:
            if not request.max_tokens and self._config.max_tokens:
                request.max_tokens = self._config.max_tokens
        self.extension.validate_options(
            {
                **request.metadata,
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
            }
        )

        model = request.model
        self._metrics.record_request(model)
        started = time.monotonic()
        try:
            response = await self._guard(
                self._open(request), context=options.context, timeout=options.timeout
            )
        except Exception as exc:
            err = wrap_provider_error(exc, provider=self.name, operation="generate")
            self._metrics.record_error(err, model)
            if err is exc:
                raise
            raise err from exc

        remaining = None
        if options.timeout is not None:
            remaining = max(0.001, options.timeout - (time.monotonic() - started))

        if request.stream and _is_event_stream(response):
            return ChatStream(
                self._stream_chunks(response, model=model, started=started),
                on_close=response.aclose,
                context=options.context,
                timeout=remaining,
                provider=self.name,
            )

        try:
            chunk = await self._guard(
                self._read_complete(response, model=model),
                context=options.context,
                timeout=remaining,
            )
        except Exception as exc:
            err = wrap_provider_error(exc, provider=self.name, operation="generate")
            self._metrics.record_error(err, model)
            if err is exc:
                raise
            raise err from exc
        finally:
            await response.aclose()
        self._record_success(chunk, started, model)
        return ChatStream.from_chunks(chunk, provider=self.name)

    async def _open(self, request: StandardRequest) -> httpx.Response:
        """Send the request and return the unread response (2xx only)."""
        await self._rate_limits.check_and_wait(request.model)
        body = self.extension.standard_to_provider(request)
        url = self._chat_url(request)

        async def attempt(headers: dict[str, str]) -> httpx.Response:
            if request.stream:
                headers = {**headers, "Accept": "text/event-stream"}
            http_request = self._client.build_request(
                "POST", url, json=body, headers=headers, timeout=self._request_timeout()
            )
            log.debug(
                "POST %s model=%s stream=%s headers=%s",
                url,
                request.model,
                request.stream,
                redact_headers(headers),
            )
            response = await retry_async(
                lambda: self._client.send(http_request, stream=True),
                policy=self._retry_policy,
            )
            self._update_rate_limits(response, request.model)
            if response.status_code >= 400:
                try:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                finally:
                    await response.aclose()
                raise error_from_response(
                    response, provider=self.name, operation="generate", body_text=text
                )
            return response

        return await self._with_credentials(attempt)

    async def _read_complete(self, response: httpx.Response, *, model: str) -> Chunk:
        raw = await response.aread()
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise json.JSONDecodeError("expected a JSON object", raw.decode(errors="replace"), 0)
        standard = self.extension.provider_to_standard(payload)
        if not standard.model:
            standard.model = model
        return standard.to_chunk()

    async def _stream_chunks(
        self, response: httpx.Response, *, model: str, started: float
    ) -> AsyncIterator[Chunk]:
        state = StreamState()
        try:
            async for chunk in read_sse_chunks(
                response.aiter_lines(), self.extension.provider_to_standard_chunk, state=state
            ):
                if chunk.done:
                    if not chunk.model:
                        chunk.model = model
                    self._record_success(chunk, started, model)
                yield chunk
        except Exception as exc:
            err = wrap_provider_error(exc, provider=self.name, operation="stream")
            self._metrics.record_error(err, model)
            if err is exc:
                raise
            raise err from exc
        finally:
            await response.aclose()

    async def _guard(
        self,
        aw: Awaitable[T],
        *,
        context: CancelToken | None,
        timeout: float | None,
    ) -> T:
        """Await *aw* under the call's timeout and cancel token."""
        async with _deadline(timeout):
            if context is None:
                return await aw
            try:
                return await context.run(aw)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if context.cancelled and (task is None or not task.cancelling()):
                    raise NetworkError(
                        f"request cancelled: {context.reason}",
                        provider=self.name,
                        operation="generate",
                    ) from None
                raise

    def _record_success(self, chunk: Chunk, started: float, model: str) -> None:
        tokens = chunk.usage.total_tokens if chunk.usage else 0
        self._metrics.record_success(time.monotonic() - started, tokens, model)

    def _chat_url(self, request: StandardRequest) -> str:
        return f"{self.base_url}{self.chat_path}"

    def _request_timeout(self) -> httpx.Timeout:
        with self._lock:
            return httpx.Timeout(self._config.timeout, connect=10.0)

    def _update_rate_limits(self, response: httpx.Response, model: str) -> None:
        try:
            info = self._rate_limit_parser.parse(response.headers, model)
        except ValueError as exc:
            log.debug("Ignoring unparsable rate-limit headers: %s", exc)
            return
        self._rate_limits.update(info)

    @property
    def rate_limits(self) -> RateLimitTracker:
        return self._rate_limits

    # --- Models ---

    async def get_models(self) -> list[Model]:
        """Model list, memoized for the cache TTL; static list on failure."""
        return await self._model_cache.get_models(
            self._discover_models, self._model_metadata.fallback_models
        )

    async def _discover_models(self) -> list[Model]:
        url = f"{self.base_url}{self.models_path}"

        async def attempt(headers: dict[str, str]) -> list[Model]:
            response = await retry_async(
                lambda: self._client.get(url, headers=headers, timeout=self._request_timeout()),
                policy=self._retry_policy,
            )
            if response.status_code >= 400:
                raise error_from_response(response, provider=self.name, operation="list_models")
            return self._parse_models(response.json())

        try:
            models = await self._with_credentials(attempt)
        except Exception as exc:
            err = wrap_provider_error(exc, provider=self.name, operation="list_models")
            if err is exc:
                raise
            raise err from exc
        log.debug("Discovered %d models for %s", len(models), self.name)
        return self._model_metadata.enrich(models)

    def _parse_models(self, payload: Any) -> list[Model]:
        entries = payload.get("data") if isinstance(payload, dict) else payload
        models: list[Model] = []
        for entry in entries or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            models.append(
                Model(
                    id=str(entry["id"]),
                    name=str(entry.get("display_name") or entry.get("name") or entry["id"]),
                    provider=self.type,
                    max_tokens=int(entry.get("context_length") or 0),
                    description=str(entry.get("description") or ""),
                )
            )
        return models

    def invalidate_models(self) -> None:
        self._model_cache.invalidate()

    # --- Health & metrics ---

    async def health_check(self) -> HealthStatus:
        """Probe the models endpoint and record the result."""
        url = f"{self.base_url}{self.models_path}"
        started = time.monotonic()

        async def probe(headers: dict[str, str]) -> httpx.Response:
            return await self._client.get(url, headers=headers, timeout=self._request_timeout())

        status: HealthStatus
        try:
            response = await self._with_credentials(probe)
        except asyncio.CancelledError:
            raise
        except (ProviderError, httpx.HTTPError) as exc:
            status = HealthStatus(
                healthy=False,
                last_checked=datetime.now(timezone.utc),
                message=str(exc),
                response_time_ms=(time.monotonic() - started) * 1000,
                status_code=getattr(exc, "status_code", None),
            )
        else:
            ok = response.status_code < 400
            status = HealthStatus(
                healthy=ok,
                last_checked=datetime.now(timezone.utc),
                message="ok" if ok else f"HTTP {response.status_code}",
                response_time_ms=(time.monotonic() - started) * 1000,
                status_code=response.status_code,
            )
        if not status.healthy:
            log.warning("Health check for %s failed: %s", self.name, status.message)
        self._metrics.set_health(status)
        return status

    def get_metrics(self) -> ProviderMetrics:
        return self._metrics.snapshot()

    def set_metrics_sink(self, sink: MetricsSink | None) -> None:
        self._metrics.sink = sink

    async def invoke_server_tool(self, name: str, params: dict[str, Any]) -> Any:
        raise InvalidRequestError(
            f"server-side tool {name!r} is not supported",
            provider=self.name,
            operation="invoke_server_tool",
        )

    # --- Lifecycle ---

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BaseProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _is_event_stream(response: httpx.Response) -> bool:
    # Some servers answer a streaming request with a plain JSON body.
    return "json" not in response.headers.get("content-type", "")


@asynccontextmanager
async def _deadline(timeout: float | None) -> AsyncIterator[None]:
    if timeout is None:
        yield
        return
    async with asyncio.timeout(timeout):
        yield
