"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
hand-writing wire payloads and transports for every provider scenario.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
import json
from typing import Any

import httpx

from providerkit.config import ProviderConfig
from providerkit.metrics import MetricEvent, MetricEventType
from providerkit.providers import OpenAIProvider
from providerkit.retry import NO_RETRY

ScriptItem = httpx.Response | BaseException | Callable[[httpx.Request], httpx.Response]

# =============================================================================
# Wire payloads
# =============================================================================


def sse_body(*events: dict[str, Any] | str, done: bool = True) -> bytes:
    """Encode events as an SSE body; strings are sent as raw data lines."""
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def openai_completion(
    content: str = "pong",
    *,
    model: str = "gpt-4o-mini",
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str = "stop",
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def openai_delta(
    content: str | None = None,
    *,
    finish_reason: str | None = None,
    tool_calls: list[dict[str, Any]] | None = None,
    usage: dict[str, int] | None = None,
) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    event: dict[str, Any] = {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "created": 1700000000,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        event["usage"] = usage
    return event


def json_response(
    payload: Any, status: int = 200, headers: dict[str, str] | None = None
) -> httpx.Response:
    return httpx.Response(status, json=payload, headers=headers)


def error_response(
    status: int,
    message: str = "boom",
    *,
    type_: str = "",
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    error: dict[str, Any] = {"message": message}
    if type_:
        error["type"] = type_
    return httpx.Response(status, json={"error": error}, headers=headers)


def sse_response(*events: dict[str, Any] | str, done: bool = True) -> httpx.Response:
    return httpx.Response(
        200,
        content=sse_body(*events, done=done),
        headers={"content-type": "text/event-stream"},
    )


def trickle_response(*events: dict[str, Any], delay_s: float) -> httpx.Response:
    """An SSE response that sleeps *delay_s* before each event."""

    async def body() -> AsyncIterator[bytes]:
        for event in events:
            await asyncio.sleep(delay_s)
            yield f"data: {json.dumps(event)}\n\n".encode()
        yield b"data: [DONE]\n\n"

    return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})


# =============================================================================
# Transport and sink doubles
# =============================================================================


@dataclass
class Recorder:
    """Scripted ``httpx.MockTransport`` that keeps every request it served.

    Script items are answered in order: a response is returned, an exception
    is raised from the transport, a callable is invoked with the request.
    """

    script: list[ScriptItem] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)

    def add(self, *items: ScriptItem) -> Recorder:
        self.script.extend(items)
        return self

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"unexpected request: {request.method} {request.url}")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item) and not isinstance(item, httpx.Response):
            return item(request)
        return item

    def body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


@dataclass
class CollectingSink:
    """MetricsSink that keeps every event."""

    events: list[MetricEvent] = field(default_factory=list)

    def record_event(self, event: MetricEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: MetricEventType) -> list[MetricEvent]:
        return [e for e in self.events if e.type is event_type]


def openai_provider(recorder: Recorder, **config: Any) -> OpenAIProvider:
    """An OpenAI provider wired to *recorder* with transport retries disabled."""
    values: dict[str, Any] = {"type": "openai", "api_key": "sk-test-key-0001", **config}
    return OpenAIProvider(
        ProviderConfig(**values), transport=recorder.transport, retry_policy=NO_RETRY
    )
