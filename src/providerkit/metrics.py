"""Per-provider counters and the shared metrics sink interface.

Providers own a ``MetricsRecorder``; reads return snapshot copies. A process
may also install one ``MetricsSink`` on the factory so every provider emits
``MetricEvent`` records to a single collector.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import threading
from typing import Any, Protocol, runtime_checkable

from providerkit.errors import error_kind
from providerkit.types import HealthStatus, ProviderMetrics

log = logging.getLogger(__name__)


class MetricEventType(str, Enum):
    REQUEST = "request"
    SUCCESS = "success"
    ERROR = "error"
    PROVIDER_SWITCH = "provider_switch"
    TOKEN_REFRESH = "token_refresh"


@dataclass(frozen=True)
class MetricEvent:
    type: MetricEventType
    provider: str
    provider_type: str = ""
    model: str = ""
    latency_s: float = 0.0
    tokens: int = 0
    error_kind: str = ""
    error: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class MetricsSink(Protocol):
    """Duck-typed protocol for metric collectors."""

    def record_event(self, event: MetricEvent) -> None: ...  # noqa: D102


class MetricsRecorder:
    """Thread-safe counters for one provider."""

    def __init__(
        self,
        provider: str,
        provider_type: str = "",
        sink: MetricsSink | None = None,
    ) -> None:
        self.provider = provider
        self.provider_type = provider_type
        self.sink = sink
        self._lock = threading.Lock()
        self._metrics = ProviderMetrics()

    def record_request(self, model: str = "") -> None:
        with self._lock:
            self._metrics.request_count += 1
            self._metrics.last_request_at = datetime.now(timezone.utc)
        self._emit(MetricEvent(MetricEventType.REQUEST, self.provider, self.provider_type, model))

    def record_success(self, latency_s: float, tokens: int = 0, model: str = "") -> None:
        with self._lock:
            m = self._metrics
            m.success_count += 1
            m.total_latency_s += latency_s
            m.tokens_used += tokens
            m.last_success_at = datetime.now(timezone.utc)
        self._emit(
            MetricEvent(
                MetricEventType.SUCCESS,
                self.provider,
                self.provider_type,
                model,
                latency_s=latency_s,
                tokens=tokens,
            )
        )

    def record_error(self, exc: BaseException, model: str = "") -> None:
        kind = error_kind(exc)
        kind_name = kind.value if kind is not None else "unknown"
        with self._lock:
            m = self._metrics
            m.error_count += 1
            m.last_error = str(exc)
            m.last_error_at = datetime.now(timezone.utc)
            m.errors_by_kind[kind_name] = m.errors_by_kind.get(kind_name, 0) + 1
        self._emit(
            MetricEvent(
                MetricEventType.ERROR,
                self.provider,
                self.provider_type,
                model,
                error_kind=kind_name,
                error=str(exc),
            )
        )

    def record_tokens(self, tokens: int) -> None:
        if tokens <= 0:
            return
        with self._lock:
            self._metrics.tokens_used += tokens

    def record_switch(self, from_provider: str, to_provider: str, reason: str = "") -> None:
        self._emit(
            MetricEvent(
                MetricEventType.PROVIDER_SWITCH,
                self.provider,
                self.provider_type,
                metadata={"from": from_provider, "to": to_provider, "reason": reason},
            )
        )

    def record_token_refresh(self, credential_id: str) -> None:
        self._emit(
            MetricEvent(
                MetricEventType.TOKEN_REFRESH,
                self.provider,
                self.provider_type,
                metadata={"credential_id": credential_id},
            )
        )

    def set_health(self, health: HealthStatus) -> None:
        with self._lock:
            self._metrics.health = health

    def snapshot(self) -> ProviderMetrics:
        with self._lock:
            return copy.deepcopy(self._metrics)

    def _emit(self, event: MetricEvent) -> None:
        sink = self.sink
        if sink is None:
            return
        try:
            sink.record_event(event)
        except Exception:
            # A faulty collector must not break provider calls.
            log.exception("Metrics sink failed for %s event", event.type.value)
