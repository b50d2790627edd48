"""Fallback provider: try children in order until one answers."""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import TYPE_CHECKING, ClassVar

from providerkit.errors import FALLBACK_KINDS, error_kind
from providerkit.virtual.base import VirtualProvider, committed_stream, open_first_chunk

if TYPE_CHECKING:
    from providerkit.streaming import ChatStream
    from providerkit.types import GenerateOptions

log = logging.getLogger(__name__)


class FallbackProvider(VirtualProvider):
    """Delegate to the first child that succeeds.

    A child is abandoned only for failures in ``FALLBACK_KINDS`` raised before
    its first chunk; once a chunk has been delivered the stream is committed
    and later errors reach the caller. ``max_retries`` caps how many children
    are attempted (0 means all of them).

    Example:
        fb = FallbackProvider(ProviderConfig(type="fallback", provider_config={
            "providers": ["openai", "anthropic"],
        }))
        fb.set_providers([openai, anthropic])
    """

    default_description: ClassVar[str] = "Tries providers in order until one succeeds"

    @property
    def max_retries(self) -> int:
        return max(0, int(self._setting("max_retries", 0) or 0))

    async def generate_chat_completion(self, options: GenerateOptions) -> ChatStream:
        providers = self._require_providers()
        budget = self.max_retries or len(providers)
        candidates = providers[:budget]
        self._metrics.record_request(options.model)

        started = time.monotonic()
        last_exc: BaseException | None = None
        previous: str | None = None
        for index, provider in enumerate(candidates):
            self._check_cancelled(options)
            if previous is not None:
                self._metrics.record_switch(previous, provider.name, reason=str(last_exc))
            try:
                stream, first = await open_first_chunk(provider, dataclasses.replace(options))
            except Exception as exc:
                kind = error_kind(exc)
                if kind not in FALLBACK_KINDS:
                    self._metrics.record_error(exc, options.model)
                    raise
                log.warning(
                    "Provider %s failed (%s), trying next of %s", provider.name, kind, self.name
                )
                last_exc = exc
                previous = provider.name
                continue

            if index:
                log.info("%s served by fallback provider %s", self.name, provider.name)
            self._metrics.record_success(time.monotonic() - started, model=options.model)
            return committed_stream(
                stream,
                first,
                {"fallback_provider": provider.name, "fallback_index": index},
                provider=self.name,
                options=options,
            )

        err = self._all_failed(last_exc, len(candidates))
        self._metrics.record_error(err, options.model)
        raise err from last_exc
