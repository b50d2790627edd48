"""Canonical records shared by every provider.

Messages, tools, options and stream chunks are plain dataclasses so that
providers, virtual providers and callers exchange one vocabulary regardless
of the wire format underneath.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from providerkit.context import CancelToken


class ProviderType(str, Enum):
    """Tags accepted by the factory."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    CEREBRAS = "cerebras"
    QWEN = "qwen"
    OPENROUTER = "openrouter"
    LMSTUDIO = "lmstudio"
    OLLAMA = "ollama"
    LLAMACPP = "llamacpp"
    OPENAI_COMPATIBLE = "openai_compatible"
    FALLBACK = "fallback"
    LOADBALANCE = "loadbalance"
    RACING = "racing"


LOCAL_PROVIDER_TYPES: frozenset[str] = frozenset(
    {
        ProviderType.LMSTUDIO.value,
        ProviderType.OLLAMA.value,
        ProviderType.LLAMACPP.value,
        ProviderType.OPENAI_COMPATIBLE.value,
    }
)

VIRTUAL_PROVIDER_TYPES: frozenset[str] = frozenset(
    {
        ProviderType.FALLBACK.value,
        ProviderType.LOADBALANCE.value,
        ProviderType.RACING.value,
    }
)


class ToolFormat(str, Enum):
    """Wire shape a provider uses for tool definitions."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ContentPart:
    """One piece of multimodal message content.

    ``type`` is ``"text"``, ``"image"`` or ``"document"``. Binary payloads are
    carried base64-encoded in ``data`` with a ``mime_type``; images may instead
    reference a remote ``url``.
    """

    type: str
    text: str = ""
    data: str | None = None
    mime_type: str | None = None
    url: str | None = None
    filename: str | None = None

    @classmethod
    def from_text(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def image(
        cls, *, data: str | None = None, mime_type: str = "image/png", url: str | None = None
    ) -> ContentPart:
        return cls(type="image", data=data, mime_type=mime_type, url=url)

    @classmethod
    def document(
        cls, *, data: str, mime_type: str = "application/pdf", filename: str | None = None
    ) -> ContentPart:
        return cls(type="document", data=data, mime_type=mime_type, filename=filename)


@dataclass
class ToolCallFunction:
    name: str
    arguments: str = ""


@dataclass
class ToolCall:
    """A model-emitted request to invoke a named function.

    ``function.arguments`` is the raw JSON string exactly as the model produced
    it; ``parsed_arguments()`` decodes it on demand.
    """

    id: str
    function: ToolCallFunction
    type: str = "function"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument string; empty arguments decode to ``{}``."""
        if not self.function.arguments:
            return {}
        value = json.loads(self.function.arguments)
        return value if isinstance(value, dict) else {"value": value}


@dataclass
class Tool:
    """A callable function exposed to the model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass
class ToolChoice:
    """How the model may use the provided tools.

    ``mode`` is one of ``auto``, ``required``, ``none`` or ``specific``; the
    last requires ``function_name``.
    """

    mode: str = "auto"
    function_name: str | None = None

    def __post_init__(self) -> None:
        if self.mode not in ("auto", "required", "none", "specific"):
            raise ValueError(f"invalid tool choice mode: {self.mode!r}")
        if self.mode == "specific" and not self.function_name:
            raise ValueError("tool choice mode 'specific' requires function_name")


@dataclass
class ChatMessage:
    """A conversation turn in canonical form."""

    role: str
    content: str = ""
    parts: list[ContentPart] = field(default_factory=list)
    reasoning: str = ""
    reasoning_content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.role, Role):
            self.role = self.role.value

    def content_parts(self) -> list[ContentPart]:
        """Multimodal view of the message; ``parts`` win over ``content``."""
        if self.parts:
            return list(self.parts)
        if self.content:
            return [ContentPart.from_text(self.content)]
        return []

    def text(self) -> str:
        """Joined text parts when ``parts`` is set, otherwise ``content``."""
        if self.parts:
            return "\n".join(p.text for p in self.parts if p.type == "text" and p.text)
        return self.content


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if not self.total_tokens:
            self.total_tokens = self.prompt_tokens + self.completion_tokens


@dataclass
class GenerateOptions:
    """Per-call options for ``generate_chat_completion``.

    ``max_tokens=0`` means the provider default and an empty ``model`` selects
    the provider's default model. ``timeout`` (seconds) bounds the whole call,
    streaming included, and ``context`` carries cooperative cancellation.
    """

    messages: list[ChatMessage] = field(default_factory=list)
    prompt: str = ""
    model: str = ""
    max_tokens: int = 0
    temperature: float | None = None
    stream: bool = False
    stop: list[str] = field(default_factory=list)
    tools: list[Tool] = field(default_factory=list)
    tool_choice: ToolChoice | None = None
    response_format: str | dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None
    context: CancelToken | None = None

    def effective_messages(self) -> list[ChatMessage]:
        """Messages to send; a bare prompt becomes a single user turn."""
        if self.messages:
            return list(self.messages)
        if self.prompt:
            return [ChatMessage(role=Role.USER.value, content=self.prompt)]
        return []


@dataclass
class StreamChoice:
    index: int = 0
    message: ChatMessage | None = None
    delta: ChatMessage | None = None
    finish_reason: str = ""


@dataclass
class Chunk:
    """One unit of response delivered to the caller.

    Streaming responses deliver incremental ``content`` in non-terminal chunks;
    the terminal ``done=True`` chunk carries the assembled tool calls in
    ``choices[0].delta``, the aggregate text in ``choices[0].message`` and the
    usage. Non-streaming responses are a single terminal chunk with the full
    ``content`` set.
    """

    content: str = ""
    done: bool = False
    id: str = ""
    model: str = ""
    created: int = 0
    choices: list[StreamChoice] = field(default_factory=list)
    usage: Usage | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def finish_reason(self) -> str:
        return self.choices[0].finish_reason if self.choices else ""

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Tool calls carried by the first choice, whether delta or message."""
        if not self.choices:
            return []
        choice = self.choices[0]
        if choice.delta is not None and choice.delta.tool_calls:
            return choice.delta.tool_calls
        if choice.message is not None:
            return choice.message.tool_calls
        return []


@dataclass
class Model:
    """Model metadata as reported by discovery and enriched statically."""

    id: str
    name: str = ""
    provider: str = ""
    max_tokens: int = 0
    supports_streaming: bool = True
    supports_tool_calling: bool = False
    supports_vision: bool = False
    capabilities: list[str] = field(default_factory=list)
    description: str = ""
    pricing: dict[str, float] = field(default_factory=dict)


@dataclass
class HealthStatus:
    healthy: bool = False
    last_checked: datetime | None = None
    message: str = ""
    response_time_ms: float = 0.0
    status_code: int | None = None


@dataclass
class ProviderMetrics:
    """Snapshot of a provider's counters.

    Returned by value; mutating a snapshot never affects the provider.
    """

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    tokens_used: int = 0
    total_latency_s: float = 0.0
    last_request_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str = ""
    errors_by_kind: dict[str, int] = field(default_factory=dict)
    health: HealthStatus = field(default_factory=HealthStatus)

    @property
    def average_latency_s(self) -> float:
        if not self.success_count:
            return 0.0
        return self.total_latency_s / self.success_count
