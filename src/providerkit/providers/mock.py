"""Mock provider for testing."""

from __future__ import annotations

import asyncio
from collections import deque
import time
from typing import TYPE_CHECKING, Any

from providerkit.config import ProviderConfig
from providerkit.errors import InvalidRequestError
from providerkit.metrics import MetricsRecorder
from providerkit.standard import StandardChoice, StandardResponse, validate_tool_results
from providerkit.streaming import ChatStream, StandardStreamChunk, StreamState
from providerkit.types import ChatMessage, HealthStatus, Model, ToolFormat, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from providerkit.config import AuthConfig
    from providerkit.metrics import MetricsSink
    from providerkit.types import Chunk, GenerateOptions, ProviderMetrics

#: A scripted reply: text, or an exception to raise from ``generate``.
Reply = str | BaseException


class MockProvider:
    """Provider double that answers without network I/O.

    Replies are taken from *replies* in order; once exhausted the provider
    echoes the last user message. Streaming replies are split into
    ``chunk_size`` character deltas.
    """

    def __init__(
        self,
        name: str = "mock",
        *,
        replies: list[Reply] | None = None,
        delay_s: float = 0.0,
        chunk_size: int = 4,
        models: list[str] | None = None,
    ) -> None:
        self._config = ProviderConfig(type="openai_compatible", name=name, base_url="mock://")
        self._replies: deque[Reply] = deque(replies or [])
        self.delay_s = delay_s
        self.chunk_size = max(1, chunk_size)
        self._models = models or ["mock-model"]
        self._metrics = MetricsRecorder(name, "mock")
        self.calls: list[GenerateOptions] = []
        self._authenticated = True

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def type(self) -> str:
        return "mock"

    @property
    def description(self) -> str:
        return "Deterministic in-memory provider"

    async def get_models(self) -> list[Model]:
        return [Model(id=m, name=m, provider=self.name) for m in self._models]

    def get_default_model(self) -> str:
        return self._models[0]

    def supports_streaming(self) -> bool:
        return True

    def supports_tool_calling(self) -> bool:
        return False

    def supports_responses_api(self) -> bool:
        return False

    def get_tool_format(self) -> ToolFormat:
        return ToolFormat.OPENAI

    async def authenticate(self, auth: AuthConfig) -> None:  # noqa: ARG002
        self._authenticated = True

    def is_authenticated(self) -> bool:
        return self._authenticated

    async def logout(self) -> None:
        self._authenticated = False

    def configure(self, config: ProviderConfig) -> None:
        self._config = config.clone()

    def get_config(self) -> ProviderConfig:
        return self._config.clone()

    def queue(self, *replies: Reply) -> None:
        """Append scripted replies."""
        self._replies.extend(replies)

    async def generate_chat_completion(self, options: GenerateOptions) -> ChatStream:
        """Return the next scripted reply, or an echo of the prompt."""
        self.calls.append(options)
        self._metrics.record_request(options.model)
        messages = options.effective_messages()
        if not messages:
            raise InvalidRequestError(
                "at least one message or a prompt is required",
                provider=self.name,
                operation="generate",
            )
        validate_tool_results(messages, provider=self.name)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

        reply = self._replies.popleft() if self._replies else None
        if isinstance(reply, BaseException):
            self._metrics.record_error(reply, options.model)
            raise reply
        text = reply if reply is not None else f"echo: {messages[-1].text()[:100]}"
        usage = Usage(prompt_tokens=10, completion_tokens=len(text.split()))
        self._metrics.record_success(self.delay_s, usage.total_tokens, options.model)

        model = options.model or self.get_default_model()
        if not options.stream:
            response = StandardResponse(
                id=f"mock-{len(self.calls)}",
                model=model,
                choices=[
                    StandardChoice(
                        message=ChatMessage(role="assistant", content=text),
                        finish_reason="stop",
                    )
                ],
                usage=usage,
            )
            return ChatStream.from_chunks(response.to_chunk(), provider=self.name)
        return ChatStream(
            self._stream(text, model, usage), context=options.context, provider=self.name
        )

    async def _stream(self, text: str, model: str, usage: Usage) -> AsyncIterator[Chunk]:
        state = StreamState(id=f"mock-{len(self.calls)}", model=model, created=int(time.time()))
        for i in range(0, len(text), self.chunk_size):
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            chunk = state.apply(StandardStreamChunk(content=text[i : i + self.chunk_size]))
            if chunk is not None:
                yield chunk
        state.apply(StandardStreamChunk(finish_reason="stop", usage=usage))
        yield state.final_chunk()

    async def invoke_server_tool(self, name: str, params: dict[str, Any]) -> Any:  # noqa: ARG002
        raise InvalidRequestError(
            f"server-side tool {name!r} is not supported",
            provider=self.name,
            operation="invoke_server_tool",
        )

    async def health_check(self) -> HealthStatus:
        return HealthStatus(healthy=True, message="ok")

    def get_metrics(self) -> ProviderMetrics:
        return self._metrics.snapshot()

    def set_metrics_sink(self, sink: MetricsSink | None) -> None:
        self._metrics.sink = sink
