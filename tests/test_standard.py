"""Request builder validation and the complete-response adapter."""

from __future__ import annotations

import pytest

from providerkit.errors import InvalidRequestError
from providerkit.providers import MockProvider
from providerkit.standard import (
    RequestBuilder,
    StandardAdapter,
    StandardChoice,
    StandardRequest,
    StandardResponse,
)
from providerkit.types import (
    ChatMessage,
    Chunk,
    GenerateOptions,
    StreamChoice,
    Tool,
    ToolCall,
    ToolCallFunction,
    ToolChoice,
    Usage,
)

pytestmark = pytest.mark.unit

_HI = [ChatMessage(role="user", content="hi")]


def test_builder_assembles_request() -> None:
    request = (
        RequestBuilder()
        .with_messages(_HI)
        .with_model("m")
        .with_max_tokens(64)
        .with_temperature(0.2)
        .with_stop(["END"])
        .with_streaming()
        .with_tools([Tool(name="t")])
        .with_tool_choice(ToolChoice("required"))
        .with_response_format("json")
        .with_timeout(5.0)
        .with_metadata("seed", 1)
        .build()
    )

    assert request.model == "m"
    assert request.max_tokens == 64
    assert request.temperature == 0.2
    assert request.stop == ["END"]
    assert request.stream
    assert request.tool_choice == ToolChoice("required")
    assert request.response_format == "json"
    assert request.timeout == 5.0
    assert request.metadata == {"seed": 1}


def test_built_request_is_independent_of_builder() -> None:
    builder = RequestBuilder().with_messages(_HI).with_metadata("a", 1)
    first = builder.build()
    builder.with_metadata("b", 2)
    assert first.metadata == {"a": 1}


@pytest.mark.parametrize(
    ("builder", "match"),
    [
        (RequestBuilder(), "at least one message"),
        (RequestBuilder().with_messages(_HI).with_temperature(2.5), "temperature"),
        (RequestBuilder().with_messages(_HI).with_max_tokens(-1), "max_tokens"),
        (RequestBuilder().with_messages(_HI).with_tool_choice(ToolChoice("auto")), "no tools"),
    ],
)
def test_build_rejects_invalid_requests(builder: RequestBuilder, match: str) -> None:
    with pytest.raises(InvalidRequestError, match=match):
        builder.build()


_CALL = ToolCall(id="c1", function=ToolCallFunction("f", "{}"))


@pytest.mark.parametrize(
    ("messages", "match"),
    [
        ([*_HI, ChatMessage(role="tool", content="1", tool_call_id="c9")], "'c9'"),
        ([*_HI, ChatMessage(role="tool", content="1", tool_call_id="")], "non-empty"),
        (
            [ChatMessage(role="tool", content="1", tool_call_id="c1"),
             ChatMessage(role="assistant", tool_calls=[_CALL])],
            "'c1'",
        ),
    ],
)
def test_build_rejects_unmatched_tool_results(messages: list[ChatMessage], match: str) -> None:
    with pytest.raises(InvalidRequestError, match=match):
        RequestBuilder().with_messages(messages).build()


def test_build_accepts_answered_tool_call() -> None:
    messages = [
        *_HI,
        ChatMessage(role="assistant", tool_calls=[_CALL]),
        ChatMessage(role="tool", content="1", tool_call_id="c1"),
    ]
    assert RequestBuilder().with_messages(messages).build().messages == messages


def test_options_round_trip_keeps_fields() -> None:
    options = GenerateOptions(prompt="hello", model="m", max_tokens=3, stop=["x"])
    request = StandardRequest.from_options(options)
    assert request.messages == [ChatMessage(role="user", content="hello")]
    back = request.to_options()
    assert (back.model, back.max_tokens, back.stop) == ("m", 3, ["x"])


def test_from_options_uses_default_model() -> None:
    request = StandardRequest.from_options(GenerateOptions(prompt="x"), default_model="fallback")
    assert request.model == "fallback"


def test_response_to_chunk_and_back() -> None:
    call = ToolCall(id="c1", function=ToolCallFunction("f", "{}"))
    response = StandardResponse(
        id="r1",
        model="m",
        choices=[
            StandardChoice(
                message=ChatMessage(role="assistant", content="done", tool_calls=[call]),
                finish_reason="tool_calls",
            )
        ],
        usage=Usage(prompt_tokens=2, completion_tokens=3),
    )

    chunk = response.to_chunk()

    assert chunk.done
    assert chunk.content == "done"
    assert chunk.tool_calls == [call]
    assert chunk.finish_reason == "tool_calls"
    again = StandardResponse.from_chunk(chunk)
    assert again.content == "done"
    assert again.usage.total_tokens == 5


def test_from_chunk_fills_message_from_streamed_content() -> None:
    chunk = Chunk(
        content="streamed",
        done=True,
        choices=[StreamChoice(delta=ChatMessage(role="assistant"), finish_reason="stop")],
    )
    response = StandardResponse.from_chunk(chunk)
    assert response.content == "streamed"
    assert response.usage == Usage()


@pytest.mark.asyncio
async def test_adapter_complete_collects_full_response() -> None:
    provider = MockProvider(replies=["a whole answer"])
    response = await StandardAdapter(provider).complete(
        StandardRequest(messages=_HI, model="mock-model", stream=True)
    )

    assert response.content == "a whole answer"
    assert response.choices[0].finish_reason == "stop"
    assert response.usage.completion_tokens == 3
    # complete() always asks for a non-streaming response.
    assert provider.calls[0].stream is False


@pytest.mark.asyncio
async def test_adapter_stream_yields_deltas() -> None:
    provider = MockProvider(replies=["abcdefgh"], chunk_size=3)
    stream = await StandardAdapter(provider).stream(StandardRequest(messages=_HI))

    deltas = [c.content async for c in stream if not c.done]

    assert deltas == ["abc", "def", "gh"]
    assert provider.calls[0].stream is True


@pytest.mark.asyncio
async def test_adapter_validates_before_calling_provider() -> None:
    provider = MockProvider()
    with pytest.raises(InvalidRequestError):
        await StandardAdapter(provider).complete(StandardRequest())
    assert provider.calls == []
