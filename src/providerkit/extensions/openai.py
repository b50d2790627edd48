"""OpenAI chat-completions wire format.

Also used, with small variations, by every OpenAI-compatible service
(Cerebras, Qwen, OpenRouter, local servers).
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from providerkit.errors import InvalidRequestError, ServerError
from providerkit.extensions.base import BaseExtension, data_url, usage_from
from providerkit.standard import StandardChoice, StandardRequest, StandardResponse
from providerkit.streaming import StandardStreamChunk, ToolCallFragment
from providerkit.types import (
    ChatMessage,
    Tool,
    ToolCall,
    ToolCallFunction,
    ToolChoice,
    Usage,
)

log = logging.getLogger(__name__)

_RESPONSE_FORMAT_TYPES = ("text", "json_object", "json_schema")
_PASSTHROUGH_METADATA: tuple[str, ...] = (
    "top_p",
    "seed",
    "parallel_tool_calls",
    "user",
    "frequency_penalty",
    "presence_penalty",
)


class OpenAIExtension(BaseExtension):
    """OpenAI chat completion, streaming and tool calling."""

    name: ClassVar[str] = "openai"
    description: ClassVar[str] = "OpenAI chat completions with streaming and tool calling"
    _capabilities: ClassVar[tuple[str, ...]] = (
        "chat",
        "streaming",
        "tool_calling",
        "function_calling",
        "json_mode",
        "system_messages",
        "temperature",
        "top_p",
        "max_tokens",
        "stop_sequences",
        "seed",
        "parallel_tool_calls",
        "vision",
    )

    #: Whether document parts can be sent as ``file`` content parts.
    supports_documents: ClassVar[bool] = True
    #: Ask for a trailing usage event when streaming.
    stream_usage: ClassVar[bool] = True
    #: ``metadata`` keys forwarded verbatim as top-level body fields.
    passthrough_metadata: ClassVar[tuple[str, ...]] = _PASSTHROUGH_METADATA

    # --- Request ---

    def standard_to_provider(self, request: StandardRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [self._message(m) for m in request.messages],
        }
        if request.max_tokens > 0:
            body["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.stop:
            body["stop"] = list(request.stop)
        if request.stream:
            body["stream"] = True
            if self.stream_usage:
                body["stream_options"] = {"include_usage": True}
        if request.tools:
            body["tools"] = [_tool(t) for t in request.tools]
            if request.tool_choice is not None:
                body["tool_choice"] = _tool_choice(request.tool_choice)
        response_format = _response_format(request.response_format)
        if response_format is not None:
            body["response_format"] = response_format
        for key in self.passthrough_metadata:
            if key in request.metadata:
                body[key] = request.metadata[key]
        return body

    def _message(self, msg: ChatMessage) -> dict[str, Any]:
        out: dict[str, Any] = {"role": msg.role}
        if msg.role == "tool":
            out["tool_call_id"] = msg.tool_call_id
            out["content"] = msg.text()
            return out

        has_media = any(p.type != "text" for p in msg.parts)
        if has_media:
            out["content"] = self._content_parts(msg)
        else:
            out["content"] = msg.text()

        if msg.role == "assistant" and msg.tool_calls:
            out["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": tc.type or "function",
                    "function": {
                        "name": tc.function.name,
                        "arguments": tc.function.arguments or "{}",
                    },
                }
                for tc in msg.tool_calls
            ]
            if not out["content"]:
                out["content"] = None
        return out

    def _content_parts(self, msg: ChatMessage) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for part in msg.content_parts():
            if part.type == "text":
                if part.text:
                    parts.append({"type": "text", "text": part.text})
            elif part.type == "image":
                parts.append({"type": "image_url", "image_url": {"url": data_url(part)}})
            elif part.type == "document" and self.supports_documents and part.data:
                parts.append(
                    {
                        "type": "file",
                        "file": {
                            "filename": part.filename or "document",
                            "file_data": data_url(part),
                        },
                    }
                )
            else:
                log.debug("Dropping unsupported %s part for %s", part.type, self.name)
        return parts

    # --- Response ---

    def provider_to_standard(self, payload: dict[str, Any]) -> StandardResponse:
        raw_choices = payload.get("choices")
        if not isinstance(raw_choices, list):
            raise self._invalid_response("response has no choices")
        choices: list[StandardChoice] = []
        for i, raw in enumerate(raw_choices):
            if not isinstance(raw, dict):
                raise self._invalid_response("malformed choice")
            message = raw.get("message") or {}
            choices.append(
                StandardChoice(
                    index=int(raw.get("index", i) or 0),
                    message=_parse_message(message),
                    finish_reason=raw.get("finish_reason") or "",
                )
            )
        metadata = {}
        if payload.get("system_fingerprint"):
            metadata["system_fingerprint"] = payload["system_fingerprint"]
        return StandardResponse(
            id=payload.get("id") or "",
            model=payload.get("model") or "",
            object=payload.get("object") or "chat.completion",
            created=int(payload.get("created") or 0),
            choices=choices,
            usage=usage_from(payload.get("usage"), "prompt_tokens", "completion_tokens", "total_tokens")
            or Usage(),
            provider_metadata=metadata,
        )

    def provider_to_standard_chunk(self, payload: dict[str, Any]) -> StandardStreamChunk:
        if isinstance(payload.get("error"), dict):
            err = payload["error"]
            return StandardStreamChunk(
                error=ServerError(
                    str(err.get("message") or "stream error"),
                    provider=self.name,
                    operation="stream",
                )
            )
        chunk = StandardStreamChunk(
            id=payload.get("id") or "",
            model=payload.get("model") or "",
            created=int(payload.get("created") or 0),
            usage=usage_from(payload.get("usage"), "prompt_tokens", "completion_tokens", "total_tokens"),
        )
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return chunk
        choice = choices[0]
        delta = choice.get("delta") or {}
        chunk.content = delta.get("content") or ""
        chunk.reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
        chunk.finish_reason = choice.get("finish_reason") or ""
        for raw in delta.get("tool_calls") or []:
            fn = raw.get("function") or {}
            chunk.tool_calls.append(
                ToolCallFragment(
                    id=raw.get("id") or None,
                    index=raw.get("index"),
                    name=fn.get("name") or None,
                    arguments=fn.get("arguments") or "",
                    type=raw.get("type") or "function",
                )
            )
        return chunk

    def validate_options(self, options: dict[str, Any]) -> None:
        seed = options.get("seed")
        if isinstance(seed, int) and seed < 0:
            raise self._invalid_option("seed must be non-negative")
        response_format = options.get("response_format")
        if isinstance(response_format, dict):
            fmt = response_format.get("type")
            if isinstance(fmt, str) and fmt not in _RESPONSE_FORMAT_TYPES:
                raise self._invalid_option(
                    f"response_format.type must be one of: {', '.join(_RESPONSE_FORMAT_TYPES)}"
                )
        super().validate_options(options)

    def _invalid_option(self, message: str) -> InvalidRequestError:
        return InvalidRequestError(message, provider=self.name, operation="validate")


def _parse_message(raw: dict[str, Any]) -> ChatMessage:
    content = raw.get("content")
    if isinstance(content, list):
        content = "".join(
            p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"
        )
    content = content or ""
    reasoning_content = raw.get("reasoning_content") or ""
    reasoning = raw.get("reasoning") or ""
    if not content:
        content = reasoning_content or reasoning
    tool_calls = [
        ToolCall(
            id=tc.get("id") or f"call_{i}",
            type=tc.get("type") or "function",
            function=ToolCallFunction(
                name=(tc.get("function") or {}).get("name") or "",
                arguments=(tc.get("function") or {}).get("arguments") or "",
            ),
        )
        for i, tc in enumerate(raw.get("tool_calls") or [])
        if isinstance(tc, dict)
    ]
    return ChatMessage(
        role=raw.get("role") or "assistant",
        content=content,
        reasoning=reasoning,
        reasoning_content=reasoning_content,
        tool_calls=tool_calls,
    )


def _tool(tool: Tool) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


def _tool_choice(choice: ToolChoice) -> str | dict[str, Any]:
    if choice.mode == "specific":
        return {"type": "function", "function": {"name": choice.function_name}}
    return choice.mode


def _response_format(fmt: str | dict[str, Any] | None) -> dict[str, Any] | None:
    if fmt is None or fmt == "":
        return None
    if isinstance(fmt, str):
        if fmt in ("json", "json_object"):
            return {"type": "json_object"}
        if fmt == "text":
            return {"type": "text"}
        return None
    if fmt.get("type") in _RESPONSE_FORMAT_TYPES:
        return dict(fmt)
    if "schema" in fmt:
        return {"type": "json_schema", "json_schema": dict(fmt)}
    # A bare JSON Schema.
    return {"type": "json_schema", "json_schema": {"name": "response", "schema": dict(fmt)}}
