"""Streaming engine: SSE framing, tool-call reassembly and ``ChatStream``.

Provider stream readers turn each SSE payload into a ``StandardStreamChunk``
(a stateless per-event delta) and feed it to a ``StreamState``, which owns the
running aggregate: text, reasoning, tool calls, usage and finish reason. Text
deltas are emitted to the caller as they arrive; the terminal chunk carries
everything that only makes sense once the response is complete.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from providerkit.errors import ProviderError, RequestTimeoutError
from providerkit.types import ChatMessage, Chunk, StreamChoice, ToolCall, ToolCallFunction, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
    from types import TracebackType

    from providerkit.context import CancelToken

log = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the payload of each ``data:`` line until ``[DONE]`` or EOF.

    Blank lines, comments and other SSE fields (``event:``, ``id:``) are
    ignored; typed-event protocols repeat the event type inside the payload.
    """
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line.startswith("data:"):
            continue
        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            return
        if data:
            yield data


@dataclass
class ToolCallFragment:
    """A piece of a tool call as it appears in one stream event."""

    id: str | None = None
    index: int | None = None
    name: str | None = None
    arguments: str = ""
    type: str = "function"


@dataclass
class _ToolCallEntry:
    id: str
    type: str
    name: str
    arguments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Reassemble streamed tool-call fragments in emission order.

    A fragment with an id creates or updates that entry. A fragment without
    one attaches to the entry last seen at the same ``index``; with no index
    either, it attaches to the most recent entry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _ToolCallEntry] = {}
        self._by_index: dict[int, str] = {}
        self._last_id: str | None = None

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, fragment: ToolCallFragment) -> None:
        call_id = fragment.id or None
        if call_id is None and fragment.index is not None:
            # Protocols without ids still need a stable key.
            call_id = self._by_index.get(fragment.index) or f"call_{fragment.index}"
        if call_id is None:
            call_id = self._last_id or f"call_{len(self._entries)}"

        entry = self._entries.get(call_id)
        if entry is None:
            entry = _ToolCallEntry(id=call_id, type=fragment.type or "function", name="")
            self._entries[call_id] = entry
        if fragment.name:
            entry.name = fragment.name
        if fragment.arguments:
            entry.arguments.append(fragment.arguments)
        if fragment.index is not None:
            self._by_index[fragment.index] = call_id
        self._last_id = call_id

    def tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(
                id=e.id,
                type=e.type,
                function=ToolCallFunction(name=e.name, arguments="".join(e.arguments)),
            )
            for e in self._entries.values()
        ]


@dataclass
class StandardStreamChunk:
    """Stateless view of one provider stream event."""

    id: str = ""
    model: str = ""
    created: int = 0
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str = ""
    usage: Usage | None = None
    #: The event terminates the stream (e.g. Anthropic ``message_stop``).
    done: bool = False
    error: ProviderError | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamState:
    """Running aggregate of one streamed response."""

    id: str = ""
    model: str = ""
    created: int = 0
    text: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    tools: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    usage: Usage | None = None
    finish_reason: str = ""
    done: bool = False

    def apply(self, event: StandardStreamChunk) -> Chunk | None:
        """Fold *event* into the aggregate; return a delta chunk to emit, if any.

        Once a finish reason has been seen, further content is dropped; only
        usage is still collected.
        """
        if event.error is not None:
            raise event.error
        self.id = self.id or event.id
        self.model = self.model or event.model
        self.created = self.created or event.created
        if event.usage is not None:
            self.usage = _merge_usage(self.usage, event.usage)
        if event.done:
            self.done = True

        if self.finish_reason:
            return None

        for fragment in event.tool_calls:
            self.tools.add(fragment)
        if event.reasoning:
            self.reasoning.append(event.reasoning)
        if event.finish_reason:
            self.finish_reason = event.finish_reason

        if not event.content:
            return None
        self.text.append(event.content)
        return Chunk(
            content=event.content,
            id=self.id,
            model=self.model,
            created=self.created,
            choices=[
                StreamChoice(
                    delta=ChatMessage(role="assistant", content=event.content),
                    finish_reason=event.finish_reason,
                )
            ],
            metadata=dict(event.metadata),
        )

    def final_chunk(self) -> Chunk:
        tool_calls = self.tools.tool_calls()
        text = "".join(self.text)
        reasoning = "".join(self.reasoning)
        finish = self.finish_reason or ("tool_calls" if tool_calls else "stop")
        message = ChatMessage(
            role="assistant",
            content=text,
            reasoning_content=reasoning,
            tool_calls=tool_calls,
        )
        return Chunk(
            content="",
            done=True,
            id=self.id,
            model=self.model,
            created=self.created or int(time.time()),
            choices=[
                StreamChoice(
                    message=message,
                    delta=ChatMessage(role="assistant", tool_calls=tool_calls),
                    finish_reason=finish,
                )
            ],
            usage=self.usage,
        )


def _merge_usage(current: Usage | None, update: Usage) -> Usage:
    # Some protocols report input and output counts in separate events.
    if current is None:
        return update
    prompt = update.prompt_tokens or current.prompt_tokens
    completion = update.completion_tokens or current.completion_tokens
    total = update.total_tokens if update.total_tokens > prompt + completion else 0
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


async def read_sse_chunks(
    lines: AsyncIterable[str],
    parse: Callable[[dict[str, Any]], StandardStreamChunk],
    *,
    state: StreamState | None = None,
) -> AsyncIterator[Chunk]:
    """Drive an SSE line source through *parse* and yield canonical chunks.

    Malformed payloads are skipped. The terminal chunk is yielded exactly once,
    at ``[DONE]``, EOF, or a terminator event.
    """
    state = state or StreamState()
    async for data in iter_sse_data(lines):
        try:
            payload = json.loads(data)
        except ValueError:
            log.debug("Skipping malformed stream payload: %.200s", data)
            continue
        if not isinstance(payload, dict):
            continue
        chunk = state.apply(parse(payload))
        if chunk is not None:
            yield chunk
        if state.done:
            break
    yield state.final_chunk()


class ChatStream:
    """Lazy, cancellable, single-consumer sequence of chunks.

    Iterate with ``async for``; close with ``aclose()`` or ``async with``.
    Closing cancels and joins a pending read before releasing the HTTP
    response, so no chunk is delivered after ``aclose()`` returns.
    """

    def __init__(
        self,
        source: AsyncIterator[Chunk],
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
        context: CancelToken | None = None,
        timeout: float | None = None,
        provider: str = "",
    ) -> None:
        self._source = source
        self._on_close = on_close
        self._context = context
        self._deadline = (
            asyncio.get_running_loop().time() + timeout if timeout else None
        )
        self._timeout = timeout
        self._provider = provider
        self._pending: asyncio.Future[Chunk] | None = None
        self._closed = False
        self._finished = False
        self._chunks_delivered = 0

    # --- Construction helpers ---

    @classmethod
    def from_chunks(cls, *chunks: Chunk, provider: str = "") -> ChatStream:
        """A stream over already-known chunks (non-streaming responses)."""

        async def gen() -> AsyncIterator[Chunk]:
            for chunk in chunks:
                yield chunk

        return cls(gen(), provider=provider)

    @classmethod
    def from_error(cls, exc: BaseException, *, provider: str = "") -> ChatStream:
        """A stream whose first ``__anext__`` raises *exc*."""

        async def gen() -> AsyncIterator[Chunk]:
            raise exc
            yield  # pragma: no cover

        return cls(gen(), provider=provider)

    # --- Iteration ---

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def chunks_delivered(self) -> int:
        return self._chunks_delivered

    def __aiter__(self) -> ChatStream:
        return self

    async def __anext__(self) -> Chunk:
        if self._closed:
            raise StopAsyncIteration
        if self._finished:
            await self.aclose()
            raise StopAsyncIteration
        if self._context is not None and self._context.cancelled:
            await self.aclose()
            raise StopAsyncIteration

        self._pending = asyncio.ensure_future(self._source.__anext__())
        waiters: set[asyncio.Future[Any]] = {self._pending}
        cancel_waiter: asyncio.Future[Any] | None = None
        if self._context is not None:
            cancel_waiter = asyncio.ensure_future(self._context.wait())
            waiters.add(cancel_waiter)

        remaining = None
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - asyncio.get_running_loop().time())

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self.aclose()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        pending = self._pending
        if pending not in done:
            timed_out = not done
            await self.aclose()
            if timed_out:
                raise RequestTimeoutError(
                    f"stream exceeded {self._timeout}s deadline",
                    provider=self._provider or None,
                    operation="stream",
                )
            raise StopAsyncIteration

        self._pending = None
        try:
            chunk = pending.result()
        except StopAsyncIteration:
            self._finished = True
            await self.aclose()
            raise
        except BaseException:
            self._finished = True
            await self.aclose()
            raise
        self._chunks_delivered += 1
        if chunk.done:
            self._finished = True
        return chunk

    async def aclose(self) -> None:
        """Release the stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            except Exception as exc:
                log.debug("Stream reader failed during close: %s", exc)
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError as exc:
                log.debug("Stream source close failed: %s", exc)
        if self._on_close is not None:
            await self._on_close()

    async def __aenter__(self) -> ChatStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def collect(self) -> Chunk:
        """Drain the stream and return one aggregate ``done=True`` chunk."""
        parts: list[str] = []
        final: Chunk | None = None
        async with self:
            async for chunk in self:
                if chunk.done:
                    final = chunk
                elif chunk.content:
                    parts.append(chunk.content)
        if final is None:
            return Chunk(content="".join(parts), done=True)
        if parts:
            final.content = "".join(parts)
        elif not final.content and final.choices and final.choices[0].message:
            final.content = final.choices[0].message.content
        return final
