"""Standardized request/response layer.

``StandardRequest`` is the validated, provider-neutral request that extensions
translate to wire payloads. ``RequestBuilder`` assembles one fluently and
validates it; ``StandardAdapter`` wraps any provider so callers can work in
terms of complete responses instead of chunk streams.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import time
from typing import TYPE_CHECKING, Any

from providerkit.errors import InvalidRequestError
from providerkit.streaming import StandardStreamChunk, ToolCallFragment
from providerkit.types import (
    ChatMessage,
    Chunk,
    GenerateOptions,
    StreamChoice,
    Tool,
    ToolChoice,
    Usage,
)

if TYPE_CHECKING:
    from providerkit.context import CancelToken
    from providerkit.providers.base import Provider
    from providerkit.streaming import ChatStream

__all__ = [
    "RequestBuilder",
    "StandardAdapter",
    "StandardChoice",
    "StandardRequest",
    "StandardResponse",
    "StandardStreamChunk",
    "ToolCallFragment",
]


@dataclass
class StandardRequest:
    """Provider-neutral chat request."""

    messages: list[ChatMessage] = field(default_factory=list)
    model: str = ""
    max_tokens: int = 0
    temperature: float | None = None
    stop: list[str] = field(default_factory=list)
    stream: bool = False
    tools: list[Tool] = field(default_factory=list)
    tool_choice: ToolChoice | None = None
    response_format: str | dict[str, Any] | None = None
    timeout: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    context: CancelToken | None = None

    @classmethod
    def from_options(cls, options: GenerateOptions, *, default_model: str = "") -> StandardRequest:
        return cls(
            messages=options.effective_messages(),
            model=options.model or default_model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            stop=list(options.stop),
            stream=options.stream,
            tools=list(options.tools),
            tool_choice=options.tool_choice,
            response_format=options.response_format,
            timeout=options.timeout,
            metadata=dict(options.metadata),
            context=options.context,
        )

    def to_options(self) -> GenerateOptions:
        return GenerateOptions(
            messages=list(self.messages),
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            stop=list(self.stop),
            stream=self.stream,
            tools=list(self.tools),
            tool_choice=self.tool_choice,
            response_format=self.response_format,
            timeout=self.timeout,
            metadata=dict(self.metadata),
            context=self.context,
        )


@dataclass
class StandardChoice:
    index: int = 0
    message: ChatMessage = field(default_factory=lambda: ChatMessage(role="assistant"))
    finish_reason: str = ""


@dataclass
class StandardResponse:
    """A complete, provider-neutral chat response."""

    id: str = ""
    model: str = ""
    object: str = "chat.completion"
    created: int = field(default_factory=lambda: int(time.time()))
    choices: list[StandardChoice] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    provider_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> ChatMessage:
        if not self.choices:
            return ChatMessage(role="assistant")
        return self.choices[0].message

    @property
    def content(self) -> str:
        return self.message.content

    def to_chunk(self) -> Chunk:
        """The single terminal chunk of a non-streaming response."""
        return Chunk(
            content=self.content,
            done=True,
            id=self.id,
            model=self.model,
            created=self.created,
            choices=[
                StreamChoice(
                    index=c.index,
                    message=c.message,
                    delta=ChatMessage(role="assistant", tool_calls=c.message.tool_calls),
                    finish_reason=c.finish_reason,
                )
                for c in self.choices
            ],
            usage=self.usage,
            metadata=dict(self.provider_metadata),
        )

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> StandardResponse:
        choices = [
            StandardChoice(
                index=c.index,
                message=replace(c.message) if c.message else ChatMessage(role="assistant"),
                finish_reason=c.finish_reason,
            )
            for c in chunk.choices
        ] or [StandardChoice(message=ChatMessage(role="assistant"))]
        if chunk.content and not choices[0].message.content:
            choices[0].message.content = chunk.content
        return cls(
            id=chunk.id,
            model=chunk.model,
            created=chunk.created or int(time.time()),
            choices=choices,
            usage=chunk.usage or Usage(),
            provider_metadata=dict(chunk.metadata),
        )


class RequestBuilder:
    """Fluent builder for ``StandardRequest``.

    Example:
        request = (
            RequestBuilder()
            .with_messages([ChatMessage(role="user", content="hi")])
            .with_temperature(0.2)
            .build()
        )
    """

    def __init__(self) -> None:
        self._request = StandardRequest()

    def with_messages(self, messages: list[ChatMessage]) -> RequestBuilder:
        self._request.messages = list(messages)
        return self

    def with_model(self, model: str) -> RequestBuilder:
        self._request.model = model
        return self

    def with_max_tokens(self, max_tokens: int) -> RequestBuilder:
        self._request.max_tokens = max_tokens
        return self

    def with_temperature(self, temperature: float) -> RequestBuilder:
        self._request.temperature = temperature
        return self

    def with_stop(self, stop: list[str]) -> RequestBuilder:
        self._request.stop = list(stop)
        return self

    def with_streaming(self, stream: bool = True) -> RequestBuilder:
        self._request.stream = stream
        return self

    def with_tools(self, tools: list[Tool]) -> RequestBuilder:
        self._request.tools = list(tools)
        return self

    def with_tool_choice(self, tool_choice: ToolChoice | None) -> RequestBuilder:
        self._request.tool_choice = tool_choice
        return self

    def with_response_format(self, response_format: str | dict[str, Any]) -> RequestBuilder:
        self._request.response_format = response_format
        return self

    def with_timeout(self, timeout: float) -> RequestBuilder:
        self._request.timeout = timeout
        return self

    def with_context(self, context: CancelToken) -> RequestBuilder:
        self._request.context = context
        return self

    def with_metadata(self, key: str, value: Any) -> RequestBuilder:
        self._request.metadata[key] = value
        return self

    def from_options(self, options: GenerateOptions) -> RequestBuilder:
        self._request = StandardRequest.from_options(options)
        return self

    def build(self) -> StandardRequest:
        """Validate and return a copy of the request."""
        validate_request(self._request)
        return replace(
            self._request,
            messages=list(self._request.messages),
            metadata=dict(self._request.metadata),
        )


def validate_tool_results(
    messages: list[ChatMessage], *, provider: str | None = None, operation: str = "generate"
) -> None:
    """Require every tool message to answer an earlier assistant tool call."""
    seen: set[str] = set()
    for msg in messages:
        if msg.role == "assistant":
            seen.update(tc.id for tc in msg.tool_calls if tc.id)
        elif msg.role == "tool":
            if not msg.tool_call_id:
                raise InvalidRequestError(
                    "tool messages require a non-empty tool_call_id",
                    provider=provider,
                    operation=operation,
                )
            if msg.tool_call_id not in seen:
                raise InvalidRequestError(
                    f"tool result {msg.tool_call_id!r} does not match an earlier tool call",
                    provider=provider,
                    operation=operation,
                )


def validate_request(request: StandardRequest) -> None:
    """Raise InvalidRequestError for structurally invalid requests."""
    if not request.messages:
        raise InvalidRequestError("at least one message is required", operation="build")
    if request.temperature is not None and not 0 <= request.temperature <= 2:
        raise InvalidRequestError("temperature must be between 0 and 2", operation="build")
    if request.max_tokens < 0:
        raise InvalidRequestError("max_tokens must be non-negative", operation="build")
    if request.tool_choice is not None and not request.tools:
        raise InvalidRequestError(
            "tool_choice specified but no tools provided", operation="build"
        )
    validate_tool_results(request.messages, operation="build")


class StandardAdapter:
    """Expose any provider through complete-response calls."""

    def __init__(self, provider: Provider) -> None:
        self.provider = provider

    async def complete(self, request: StandardRequest) -> StandardResponse:
        validate_request(request)
        options = replace(request, stream=False).to_options()
        stream = await self.provider.generate_chat_completion(options)
        chunk = await stream.collect()
        return StandardResponse.from_chunk(chunk)

    async def stream(self, request: StandardRequest) -> ChatStream:
        validate_request(request)
        options = replace(request, stream=True).to_options()
        return await self.provider.generate_chat_completion(options)
