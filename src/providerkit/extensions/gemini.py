"""Gemini ``generateContent`` wire format."""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar
import uuid

from providerkit.errors import InvalidRequestError, ServerError
from providerkit.extensions.base import BaseExtension, decode_arguments, usage_from
from providerkit.standard import StandardChoice, StandardRequest, StandardResponse
from providerkit.streaming import StandardStreamChunk, ToolCallFragment
from providerkit.types import ChatMessage, ContentPart, ToolCall, ToolCallFunction, ToolChoice, Usage

log = logging.getLogger(__name__)

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
}

_TOOL_MODES = {"auto": "AUTO", "required": "ANY", "none": "NONE", "specific": "ANY"}


class GeminiExtension(BaseExtension):
    name: ClassVar[str] = "gemini"
    description: ClassVar[str] = "Google Gemini generateContent with function calling"
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
        "vision",
        "documents",
    )

    def standard_to_provider(self, request: StandardRequest) -> dict[str, Any]:
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        call_id_to_name: dict[str, str] = {}
        for msg in request.messages:
            if msg.role == "system":
                if msg.text():
                    system_parts.append(msg.text())
                continue
            content = _content(msg, call_id_to_name)
            if content is None:
                continue
            # Consecutive same-role turns must be folded into one Content.
            if contents and contents[-1]["role"] == content["role"]:
                contents[-1]["parts"].extend(content["parts"])
            else:
                contents.append(content)

        body: dict[str, Any] = {"contents": contents}
        if system_parts:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}

        generation: dict[str, Any] = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.max_tokens > 0:
            generation["maxOutputTokens"] = request.max_tokens
        if request.stop:
            generation["stopSequences"] = list(request.stop)
        if "top_p" in request.metadata:
            generation["topP"] = request.metadata["top_p"]
        _apply_response_format(generation, request.response_format)
        if generation:
            body["generationConfig"] = generation

        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": t.name,
                            "description": t.description,
                            "parameters": t.input_schema,
                        }
                        for t in request.tools
                    ]
                }
            ]
            if request.tool_choice is not None:
                body["toolConfig"] = _tool_config(request.tool_choice)
        return body

    def provider_to_standard(self, payload: dict[str, Any]) -> StandardResponse:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            feedback = payload.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise InvalidRequestError(
                    f"prompt blocked: {feedback['blockReason']}",
                    provider=self.name,
                    operation="parse",
                )
            raise self._invalid_response("response has no candidates")
        choices: list[StandardChoice] = []
        for i, candidate in enumerate(candidates):
            text, reasoning, calls = _parse_parts(candidate)
            tool_calls = [
                ToolCall(
                    id=frag.id or f"call_{i}",
                    function=ToolCallFunction(name=frag.name or "", arguments=frag.arguments),
                )
                for frag in calls
            ]
            finish = _finish_reason(candidate.get("finishReason"))
            if tool_calls and finish == "stop":
                finish = "tool_calls"
            choices.append(
                StandardChoice(
                    index=int(candidate.get("index", i) or 0),
                    message=ChatMessage(
                        role="assistant",
                        content=text,
                        reasoning_content=reasoning,
                        tool_calls=tool_calls,
                    ),
                    finish_reason=finish,
                )
            )
        return StandardResponse(
            id=payload.get("responseId") or "",
            model=payload.get("modelVersion") or "",
            choices=choices,
            usage=_usage(payload.get("usageMetadata")) or Usage(),
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
            id=payload.get("responseId") or "",
            model=payload.get("modelVersion") or "",
            usage=_usage(payload.get("usageMetadata")),
        )
        candidates = payload.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return chunk
        candidate = candidates[0]
        chunk.content, chunk.reasoning, chunk.tool_calls = _parse_parts(candidate)
        finish = _finish_reason(candidate.get("finishReason"))
        if finish == "stop" and chunk.tool_calls:
            finish = "tool_calls"
        chunk.finish_reason = finish
        return chunk


def _content(msg: ChatMessage, call_id_to_name: dict[str, str]) -> dict[str, Any] | None:
    if msg.role == "tool":
        name = call_id_to_name.get(msg.tool_call_id or "")
        if name is None:
            # Gemini matches function responses by name, so an orphan cannot be sent.
            raise InvalidRequestError(
                f"tool result {msg.tool_call_id!r} does not match an earlier tool call",
                provider="gemini",
                operation="generate",
            )
        response = decode_arguments(msg.text()) if msg.text() else {}
        if msg.text() and not response:
            response = {"result": msg.text()}
        return {
            "role": "user",
            "parts": [{"functionResponse": {"name": name, "response": response}}],
        }
    if msg.role == "assistant":
        parts: list[dict[str, Any]] = []
        if msg.text():
            parts.append({"text": msg.text()})
        for tc in msg.tool_calls:
            call_id_to_name[tc.id] = tc.function.name
            parts.append(
                {
                    "functionCall": {
                        "name": tc.function.name,
                        "args": decode_arguments(tc.function.arguments),
                    }
                }
            )
        return {"role": "model", "parts": parts} if parts else None

    parts = []
    for part in msg.content_parts():
        converted = _part(part)
        if converted is not None:
            parts.append(converted)
    return {"role": "user", "parts": parts} if parts else None


def _part(part: ContentPart) -> dict[str, Any] | None:
    if part.type == "text":
        return {"text": part.text} if part.text else None
    if part.data:
        return {
            "inlineData": {
                "mimeType": part.mime_type or "application/octet-stream",
                "data": part.data,
            }
        }
    if part.url:
        return {
            "fileData": {
                "mimeType": part.mime_type or "application/octet-stream",
                "fileUri": part.url,
            }
        }
    log.debug("Dropping empty %s part for gemini", part.type)
    return None


def _parse_parts(candidate: dict[str, Any]) -> tuple[str, str, list[ToolCallFragment]]:
    content = candidate.get("content") or {}
    text: list[str] = []
    reasoning: list[str] = []
    calls: list[ToolCallFragment] = []
    for part in content.get("parts") or []:
        if not isinstance(part, dict):
            continue
        if "functionCall" in part:
            fc = part["functionCall"] or {}
            # Gemini delivers whole function calls and rarely assigns ids.
            calls.append(
                ToolCallFragment(
                    id=fc.get("id") or f"call_{uuid.uuid4().hex[:8]}",
                    name=fc.get("name") or "",
                    arguments=json.dumps(fc.get("args") or {}),
                )
            )
        elif part.get("thought") and part.get("text"):
            reasoning.append(part["text"])
        elif part.get("text"):
            text.append(part["text"])
    return "".join(text), "".join(reasoning), calls


def _finish_reason(raw: Any) -> str:
    if not raw or raw == "FINISH_REASON_UNSPECIFIED":
        return ""
    return _FINISH_REASONS.get(str(raw), str(raw).lower())


def _usage(raw: Any) -> Usage | None:
    return usage_from(raw, "promptTokenCount", "candidatesTokenCount", "totalTokenCount")


def _tool_config(choice: ToolChoice) -> dict[str, Any]:
    config: dict[str, Any] = {"mode": _TOOL_MODES[choice.mode]}
    if choice.mode == "specific":
        config["allowedFunctionNames"] = [choice.function_name]
    return {"functionCallingConfig": config}


def _apply_response_format(generation: dict[str, Any], fmt: str | dict[str, Any] | None) -> None:
    if not fmt:
        return
    if isinstance(fmt, str):
        if fmt in ("json", "json_object"):
            generation["responseMimeType"] = "application/json"
        return
    fmt_type = fmt.get("type")
    if fmt_type == "text":
        return
    generation["responseMimeType"] = "application/json"
    if fmt_type == "json_object":
        return
    schema = fmt.get("schema")
    if schema is None and isinstance(fmt.get("json_schema"), dict):
        schema = fmt["json_schema"].get("schema")
    if schema is None and fmt_type != "json_schema":
        # A bare JSON Schema.
        schema = dict(fmt)
    if schema is not None:
        generation["responseSchema"] = schema
