"""Racing provider: ask several children at once and keep the best answer."""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, ClassVar

from providerkit.context import CancelToken
from providerkit.errors import (
    ConfigurationError,
    InvalidResponseError,
    NotFoundError,
    RequestTimeoutError,
)
from providerkit.types import Model
from providerkit.virtual.base import VirtualProvider, committed_stream, open_first_chunk

if TYPE_CHECKING:
    from collections.abc import Mapping

    from providerkit.config import ProviderConfig
    from providerkit.metrics import MetricsSink
    from providerkit.providers.base import Provider
    from providerkit.streaming import ChatStream
    from providerkit.types import Chunk, GenerateOptions

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_GRACE_PERIOD_MS = 1000
DEFAULT_K = 2


class RaceStrategy(str, Enum):
    FIRST_WINS = "first_wins"
    FASTEST_OF_K = "fastest_of_k"


def _strategy(raw: Any, *, where: str) -> RaceStrategy | None:
    if raw in (None, ""):
        return None
    try:
        return RaceStrategy(str(raw).strip().lower())
    except ValueError:
        raise ConfigurationError(
            f"Unknown racing strategy {raw!r} in {where}",
            hint=f"Use one of: {', '.join(s.value for s in RaceStrategy)}.",
        ) from None


@dataclass(frozen=True)
class ProviderRef:
    """A child provider taking part in a virtual model, with its model id."""

    name: str
    model: str = ""
    priority: int = 0


@dataclass(frozen=True)
class VirtualModel:
    """A named race: which children run, with which models, under which rules.

    ``strategy``, ``timeout_ms`` and ``k`` fall back to the provider-level
    settings when unset.
    """

    name: str
    providers: tuple[ProviderRef, ...]
    display_name: str = ""
    description: str = ""
    strategy: RaceStrategy | None = None
    timeout_ms: int = 0
    k: int = 0

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> VirtualModel:
        refs: list[ProviderRef] = []
        for item in data.get("providers") or []:
            if isinstance(item, str):
                refs.append(ProviderRef(name=item))
            elif isinstance(item, dict) and item.get("name"):
                refs.append(
                    ProviderRef(
                        name=str(item["name"]),
                        model=str(item.get("model") or ""),
                        priority=int(item.get("priority") or 0),
                    )
                )
            else:
                raise ConfigurationError(
                    f"virtual_models.{name}.providers entries need a name, got {item!r}"
                )
        if not refs:
            raise ConfigurationError(f"virtual_models.{name} must list at least one provider")
        timeout_ms = int(data.get("timeout_ms") or 0)
        if timeout_ms < 0:
            raise ConfigurationError(f"virtual_models.{name}.timeout_ms must be non-negative")
        return cls(
            name=name,
            providers=tuple(sorted(refs, key=lambda r: -r.priority)),
            display_name=str(data.get("display_name") or name),
            description=str(data.get("description") or ""),
            strategy=_strategy(data.get("strategy"), where=f"virtual_models.{name}"),
            timeout_ms=timeout_ms,
            k=int(data.get("k") or 0),
        )


@dataclass
class ProviderStats:
    total_races: int = 0
    wins: int = 0
    losses: int = 0
    total_latency_s: float = 0.0
    last_updated: datetime | None = None

    @property
    def win_rate(self) -> float:
        return self.wins / self.total_races if self.total_races else 0.0

    @property
    def average_latency_s(self) -> float:
        return self.total_latency_s / self.total_races if self.total_races else 0.0


class PerformanceTracker:
    """In-memory win/loss and latency history per child provider."""

    #: Score for a provider that has never raced.
    UNKNOWN_SCORE = 0.5

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: dict[str, ProviderStats] = {}

    def record_win(self, provider: str, latency_s: float) -> None:
        self._record(provider, latency_s, won=True)

    def record_loss(self, provider: str, latency_s: float) -> None:
        self._record(provider, latency_s, won=False)

    def _record(self, provider: str, latency_s: float, *, won: bool) -> None:
        with self._lock:
            stats = self._stats.setdefault(provider, ProviderStats())
            stats.total_races += 1
            if won:
                stats.wins += 1
            else:
                stats.losses += 1
            stats.total_latency_s += latency_s
            stats.last_updated = datetime.now(timezone.utc)

    def score(self, provider: str) -> float:
        with self._lock:
            stats = self._stats.get(provider)
            return stats.win_rate if stats is not None else self.UNKNOWN_SCORE

    def stats(self) -> dict[str, ProviderStats]:
        with self._lock:
            return {name: dataclasses.replace(s) for name, s in self._stats.items()}


@dataclass
class _RaceResult:
    provider: Provider
    token: CancelToken
    latency_s: float = 0.0
    stream: ChatStream | None = None
    first: Chunk | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.stream is not None


@dataclass
class _Race:
    tasks: dict[asyncio.Task[_RaceResult], CancelToken] = field(default_factory=dict)
    successes: list[_RaceResult] = field(default_factory=list)
    failures: list[_RaceResult] = field(default_factory=list)


class RacingProvider(VirtualProvider):
    """Send each request to several children concurrently.

    Settings (``provider_config``): ``providers``, ``strategy``
    (``first_wins`` or ``fastest_of_k``), ``timeout_ms``, ``grace_period_ms``,
    ``k``, ``virtual_models`` and ``default_virtual_model``. With virtual
    models configured, ``options.model`` names the virtual model to race.

    A child "answers" when its first chunk arrives, so streaming and
    non-streaming requests race the same way. Losing streams are closed and
    losing requests are cancelled through their child ``CancelToken``.
    """

    default_description: ClassVar[str] = "Races multiple providers for fastest response"

    def __init__(self, config: ProviderConfig, *, metrics_sink: MetricsSink | None = None) -> None:
        super().__init__(config, metrics_sink=metrics_sink)
        self.strategy = (
            _strategy(self._setting("strategy"), where="strategy") or RaceStrategy.FIRST_WINS
        )
        self.timeout_ms = int(self._setting("timeout_ms") or DEFAULT_TIMEOUT_MS)
        self.grace_period_ms = int(self._setting("grace_period_ms", DEFAULT_GRACE_PERIOD_MS))
        self.k = int(self._setting("k") or DEFAULT_K)
        if self.timeout_ms <= 0:
            raise ConfigurationError("racing timeout_ms must be positive")
        if self.grace_period_ms < 0:
            raise ConfigurationError("racing grace_period_ms must be non-negative")
        raw_models = self._setting("virtual_models") or {}
        self.virtual_models: dict[str, VirtualModel] = {
            name: VirtualModel.from_mapping(name, data) for name, data in raw_models.items()
        }
        self.default_virtual_model = str(self._setting("default_virtual_model") or "")
        if self.default_virtual_model and self.default_virtual_model not in self.virtual_models:
            raise ConfigurationError(
                f"default_virtual_model {self.default_virtual_model!r} is not a virtual model"
            )
        self.performance = PerformanceTracker()
        self._reapers: set[asyncio.Task[None]] = set()
        self._closing = asyncio.Event()

    # --- Models ---

    async def get_models(self) -> list[Model]:
        if not self.virtual_models:
            return await super().get_models()
        return [
            Model(
                id=name,
                name=vm.display_name,
                provider=self.name,
                description=vm.description,
            )
            for name, vm in sorted(self.virtual_models.items())
        ]

    def get_default_model(self) -> str:
        if self.default_virtual_model:
            return self.default_virtual_model
        if self.virtual_models:
            return min(self.virtual_models)
        return super().get_default_model()

    def _entrants(self, model: str) -> tuple[VirtualModel | None, list[tuple[Provider, str]]]:
        providers = self._require_providers()
        if not self.virtual_models:
            return None, [(p, model) for p in providers]
        vm = self.virtual_models.get(model or self.get_default_model())
        if vm is None:
            raise NotFoundError(
                f"virtual model not found: {model!r}", provider=self.name, operation="generate"
            )
        by_name = {p.name: p for p in providers}
        entrants: list[tuple[Provider, str]] = []
        for ref in vm.providers:
            if ref.name not in by_name:
                raise ConfigurationError(
                    f"virtual model {vm.name!r} references unknown provider {ref.name!r}"
                )
            entrants.append((by_name[ref.name], ref.model))
        return vm, entrants

    # --- Generation ---

    async def generate_chat_completion(self, options: GenerateOptions) -> ChatStream:
        vm, entrants = self._entrants(options.model)
        strategy = (vm.strategy if vm else None) or self.strategy
        timeout_s = ((vm.timeout_ms if vm else 0) or self.timeout_ms) / 1000
        k = (vm.k if vm else 0) or self.k
        need = 1 if strategy is RaceStrategy.FIRST_WINS else max(1, min(k, len(entrants)))

        self._check_cancelled(options)
        self._metrics.record_request(options.model)
        parent = options.context or CancelToken()
        started = time.monotonic()

        race = _Race()
        for provider, model in entrants:
            token = parent.child()
            child_options = dataclasses.replace(
                options, model=model or options.model, context=token
            )
            task = asyncio.create_task(self._attempt(provider, child_options, token))
            race.tasks[task] = token

        try:
            pending = await self._run(race, need, timeout_s)
        except asyncio.CancelledError:
            await self._abandon(race.tasks, race.successes, grace_s=0.0)
            raise

        if not race.successes:
            await self._abandon({t: race.tasks[t] for t in pending}, [], grace_s=0.0)
            for result in race.failures:
                self.performance.record_loss(result.provider.name, result.latency_s)
            if pending:
                err = RequestTimeoutError(
                    f"no provider answered within {timeout_s:g}s",
                    provider=self.name,
                    operation="generate",
                )
                self._metrics.record_error(err, options.model)
                raise err
            last = race.failures[-1].error if race.failures else None
            err = self._all_failed(last, len(entrants))
            self._metrics.record_error(err, options.model)
            raise err from last

        winner = self._pick(race.successes, strategy)
        self.performance.record_win(winner.provider.name, winner.latency_s)
        for result in race.failures:
            self.performance.record_loss(result.provider.name, result.latency_s)
        losers = [r for r in race.successes if r is not winner]
        for result in losers:
            self.performance.record_loss(result.provider.name, result.latency_s)

        grace_s = self.grace_period_ms / 1000 if strategy is RaceStrategy.FIRST_WINS else 0.0
        self._spawn_reaper({t: race.tasks[t] for t in pending}, losers, grace_s)

        self._metrics.record_success(time.monotonic() - started, model=options.model)
        log.debug(
            "%s race won by %s in %.3fs", self.name, winner.provider.name, winner.latency_s
        )
        tags: dict[str, Any] = {
            "racing_provider": winner.provider.name,
            "racing_latency_ms": int(winner.latency_s * 1000),
        }
        if vm is not None:
            tags["virtual_model"] = vm.name
        if winner.stream is None:
            raise RuntimeError("race winner has no stream")  # pragma: no cover
        return committed_stream(
            winner.stream, winner.first, tags, provider=self.name, options=options
        )

    async def _attempt(
        self, provider: Provider, options: GenerateOptions, token: CancelToken
    ) -> _RaceResult:
        t0 = time.monotonic()
        try:
            stream, first = await open_first_chunk(provider, options)
        except Exception as exc:
            log.debug("Racer %s failed: %s", provider.name, exc)
            return _RaceResult(provider, token, time.monotonic() - t0, error=exc)
        latency = time.monotonic() - t0
        if first is None:
            return _RaceResult(
                provider,
                token,
                latency,
                error=InvalidResponseError(
                    "stream ended before the first chunk",
                    provider=provider.name,
                    operation="generate",
                ),
            )
        return _RaceResult(provider, token, latency, stream=stream, first=first)

    async def _run(
        self, race: _Race, need: int, timeout_s: float
    ) -> set[asyncio.Task[_RaceResult]]:
        """Collect results until *need* successes, all done, or the deadline."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        pending: set[asyncio.Task[_RaceResult]] = set(race.tasks)
        while pending and len(race.successes) < need:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                result = task.result()
                (race.successes if result.ok else race.failures).append(result)
        return pending

    def _pick(self, successes: list[_RaceResult], strategy: RaceStrategy) -> _RaceResult:
        if strategy is RaceStrategy.FIRST_WINS or len(successes) == 1:
            return successes[0]

        def score(result: _RaceResult) -> float:
            return self.performance.score(result.provider.name) / (1.0 + result.latency_s)

        return max(successes, key=score)

    # --- Loser cleanup ---

    def _spawn_reaper(
        self,
        pending: dict[asyncio.Task[_RaceResult], CancelToken],
        losers: list[_RaceResult],
        grace_s: float,
    ) -> None:
        if not pending and not losers:
            return
        task = asyncio.create_task(self._abandon(pending, losers, grace_s=grace_s))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _abandon(
        self,
        pending: dict[asyncio.Task[_RaceResult], CancelToken],
        losers: list[_RaceResult],
        *,
        grace_s: float,
    ) -> None:
        """Close losing streams, then cancel racers still running after *grace_s*."""
        for result in losers:
            result.token.cancel("race lost")
            if result.stream is not None:
                await result.stream.aclose()
        if not pending:
            return
        if grace_s > 0 and not self._closing.is_set():
            await self._grace(set(pending), grace_s)
        for task, token in pending.items():
            if not task.done():
                token.cancel("race lost")
                task.cancel()
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if not isinstance(result, _RaceResult):
                continue
            self.performance.record_loss(result.provider.name, result.latency_s)
            result.token.cancel("race lost")
            if result.stream is not None:
                await result.stream.aclose()

    async def _grace(self, pending: set[asyncio.Task[_RaceResult]], grace_s: float) -> None:
        """Wait up to *grace_s* for *pending* racers, or until the provider closes."""
        everyone = asyncio.ensure_future(asyncio.wait(pending))
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait(
                {everyone, closing}, timeout=grace_s, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            everyone.cancel()
            closing.cancel()

    async def aclose(self) -> None:
        """Cut grace periods short and wait for loser cleanup to finish."""
        self._closing.set()
        await asyncio.gather(*list(self._reapers), return_exceptions=True)
