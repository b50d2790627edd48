"""Anthropic Messages API wire format."""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar

from providerkit.errors import (
    AuthenticationError,
    InvalidRequestError,
    ProviderError,
    RateLimitError,
    ServerError,
)
from providerkit.extensions.base import BaseExtension, decode_arguments, usage_from
from providerkit.standard import StandardChoice, StandardRequest, StandardResponse
from providerkit.streaming import StandardStreamChunk, ToolCallFragment
from providerkit.types import ChatMessage, ContentPart, ToolCall, ToolCallFunction, ToolChoice, Usage

log = logging.getLogger(__name__)

ANTHROPIC_DEFAULT_MAX_TOKENS = 8192

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}

_STREAM_ERRORS: dict[str, type[ProviderError]] = {
    "rate_limit_error": RateLimitError,
    "authentication_error": AuthenticationError,
    "permission_error": AuthenticationError,
    "invalid_request_error": InvalidRequestError,
}


class AnthropicExtension(BaseExtension):
    """Messages API with typed streaming events and tool use."""

    name: ClassVar[str] = "anthropic"
    description: ClassVar[str] = "Anthropic Messages API with streaming and tool use"
    _capabilities: ClassVar[tuple[str, ...]] = (
        "chat",
        "streaming",
        "tool_calling",
        "system_messages",
        "temperature",
        "max_tokens",
        "stop_sequences",
        "vision",
        "documents",
        "thinking",
    )

    def standard_to_provider(self, request: StandardRequest) -> dict[str, Any]:
        system_parts: list[str] = []
        messages: list[dict[str, Any]] = []
        for msg in request.messages:
            if msg.role == "system":
                if msg.text():
                    system_parts.append(msg.text())
                continue
            converted = _message(msg)
            if converted is not None:
                _append_message(messages, converted)

        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.stop:
            body["stop_sequences"] = list(request.stop)
        if request.stream:
            body["stream"] = True
        if request.tools:
            body["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.input_schema,
                }
                for t in request.tools
            ]
            if request.tool_choice is not None:
                body["tool_choice"] = _tool_choice(request.tool_choice)
        if request.response_format:
            log.debug("Anthropic has no response_format; ignoring %r", request.response_format)
        if "top_p" in request.metadata:
            body["top_p"] = request.metadata["top_p"]
        return body

    def provider_to_standard(self, payload: dict[str, Any]) -> StandardResponse:
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise self._invalid_response("response has no content blocks")
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text") or "")
            elif block_type == "thinking":
                reasoning_parts.append(block.get("thinking") or "")
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id") or "",
                        function=ToolCallFunction(
                            name=block.get("name") or "",
                            arguments=json.dumps(block.get("input") or {}),
                        ),
                    )
                )
        message = ChatMessage(
            role="assistant",
            content="".join(text_parts),
            reasoning_content="".join(reasoning_parts),
            tool_calls=tool_calls,
        )
        return StandardResponse(
            id=payload.get("id") or "",
            model=payload.get("model") or "",
            object="message",
            choices=[
                StandardChoice(
                    message=message,
                    finish_reason=_stop_reason(payload.get("stop_reason")),
                )
            ],
            usage=usage_from(payload.get("usage"), "input_tokens", "output_tokens") or Usage(),
        )

    def provider_to_standard_chunk(self, payload: dict[str, Any]) -> StandardStreamChunk:
        event_type = payload.get("type")
        chunk = StandardStreamChunk()
        if event_type == "message_start":
            message = payload.get("message") or {}
            chunk.id = message.get("id") or ""
            chunk.model = message.get("model") or ""
            chunk.usage = usage_from(message.get("usage"), "input_tokens", "output_tokens")
        elif event_type == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                chunk.tool_calls.append(
                    ToolCallFragment(
                        id=block.get("id") or None,
                        index=payload.get("index"),
                        name=block.get("name") or None,
                    )
                )
            elif block.get("type") == "text":
                chunk.content = block.get("text") or ""
        elif event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                chunk.content = delta.get("text") or ""
            elif delta_type == "input_json_delta":
                chunk.tool_calls.append(
                    ToolCallFragment(
                        index=payload.get("index"),
                        arguments=delta.get("partial_json") or "",
                    )
                )
            elif delta_type == "thinking_delta":
                chunk.reasoning = delta.get("thinking") or ""
        elif event_type == "message_delta":
            delta = payload.get("delta") or {}
            chunk.finish_reason = _stop_reason(delta.get("stop_reason"))
            chunk.usage = usage_from(payload.get("usage"), "input_tokens", "output_tokens")
        elif event_type == "message_stop":
            chunk.done = True
        elif event_type == "error":
            err = payload.get("error") or {}
            cls = _STREAM_ERRORS.get(err.get("type") or "", ServerError)
            chunk.error = cls(
                str(err.get("message") or "stream error"),
                provider=self.name,
                operation="stream",
            )
        return chunk


def _stop_reason(stop_reason: Any) -> str:
    if not stop_reason:
        return ""
    reason = str(stop_reason).lower()
    return _STOP_REASONS.get(reason, reason)


def _tool_choice(choice: ToolChoice) -> dict[str, str]:
    if choice.mode == "required":
        return {"type": "any"}
    if choice.mode == "specific":
        return {"type": "tool", "name": choice.function_name or ""}
    return {"type": choice.mode}


def _message(msg: ChatMessage) -> dict[str, Any] | None:
    if msg.role == "tool":
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.text(),
                }
            ],
        }
    if msg.role == "assistant":
        blocks: list[dict[str, Any]] = []
        if msg.text():
            blocks.append({"type": "text", "text": msg.text()})
        for tc in msg.tool_calls:
            blocks.append(
                {
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.function.name,
                    "input": decode_arguments(tc.function.arguments),
                }
            )
        return {"role": "assistant", "content": blocks} if blocks else None

    if not any(p.type != "text" for p in msg.parts):
        return {"role": "user", "content": msg.text()}
    blocks = []
    for part in msg.content_parts():
        block = _content_block(part)
        if block is not None:
            blocks.append(block)
    return {"role": "user", "content": blocks}


def _content_block(part: ContentPart) -> dict[str, Any] | None:
    if part.type == "text":
        return {"type": "text", "text": part.text} if part.text else None
    if part.type in ("image", "document"):
        if part.data:
            source: dict[str, Any] = {
                "type": "base64",
                "media_type": part.mime_type or "application/octet-stream",
                "data": part.data,
            }
        elif part.url:
            source = {"type": "url", "url": part.url}
        else:
            return None
        return {"type": part.type, "source": source}
    log.debug("Dropping unsupported %s part for anthropic", part.type)
    return None


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation, so consecutive
    same-role turns (several tool results, or a tool result followed by the
    next prompt) become one message with concatenated content blocks.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)
