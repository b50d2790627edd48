"""Model cache TTL, stale fallback and static metadata."""

from __future__ import annotations

import asyncio

import pytest

from providerkit.errors import NetworkError
from providerkit.models import ModelCache, ModelMetadataRegistry
from providerkit.types import Model

pytestmark = pytest.mark.unit


class _Fetcher:
    def __init__(self, *results: list[Model] | Exception) -> None:
        self.results = list(results)
        self.calls = 0

    async def __call__(self) -> list[Model]:
        self.calls += 1
        await asyncio.sleep(0)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _models(*ids: str) -> list[Model]:
    return [Model(id=i) for i in ids]


@pytest.mark.asyncio
async def test_cache_hit_within_ttl() -> None:
    cache = ModelCache(ttl_s=60)
    fetch = _Fetcher(_models("a"))

    first = await cache.get_models(fetch)
    second = await cache.get_models(fetch)

    assert [m.id for m in first] == [m.id for m in second] == ["a"]
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_stale_cache_refetches() -> None:
    cache = ModelCache(ttl_s=0)
    fetch = _Fetcher(_models("a"), _models("b"))

    await cache.get_models(fetch)
    latest = await cache.get_models(fetch)

    assert [m.id for m in latest] == ["b"]
    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_failed_refresh_serves_stale_list() -> None:
    cache = ModelCache(ttl_s=0)
    fetch = _Fetcher(_models("a"), NetworkError("down"))

    await cache.get_models(fetch)
    served = await cache.get_models(fetch, lambda: _models("static"))

    assert [m.id for m in served] == ["a"]


@pytest.mark.asyncio
async def test_failed_first_fetch_uses_fallback() -> None:
    cache = ModelCache()
    served = await cache.get_models(_Fetcher(NetworkError("down")), lambda: _models("static"))
    assert [m.id for m in served] == ["static"]


@pytest.mark.asyncio
async def test_failed_fetch_without_fallback_raises() -> None:
    with pytest.raises(NetworkError):
        await ModelCache().get_models(_Fetcher(NetworkError("down")))


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_fetch() -> None:
    cache = ModelCache()
    fetch = _Fetcher(_models("a"))

    results = await asyncio.gather(*(cache.get_models(fetch) for _ in range(5)))

    assert all([m.id for m in r] == ["a"] for r in results)
    assert fetch.calls == 1


def test_invalidate_marks_stale() -> None:
    cache = ModelCache()
    cache.update(_models("a"))
    assert cache.get() is not None
    cache.invalidate()
    assert cache.is_stale()
    assert cache.get() is None


def test_returned_list_is_a_copy() -> None:
    cache = ModelCache()
    cache.update(_models("a"))
    listing = cache.get()
    assert listing is not None
    listing.clear()
    assert cache.get() == _models("a")


# =============================================================================
# Static metadata
# =============================================================================


def test_dated_snapshot_inherits_family_metadata() -> None:
    registry = ModelMetadataRegistry("openai")
    meta = registry.get("gpt-4o-mini-2024-07-18")
    assert meta is not None
    assert meta.display_name == "GPT-4o Mini"


def test_enrich_fills_blanks_only() -> None:
    registry = ModelMetadataRegistry("anthropic")
    [enriched, unknown] = registry.enrich(
        [
            Model(id="claude-sonnet-4-5-20250929", name="claude-sonnet-4-5-20250929"),
            Model(id="claude-experimental", name="Experimental"),
        ]
    )

    assert enriched.name == "Claude Sonnet 4.5"
    assert enriched.max_tokens == 200000
    assert enriched.supports_vision
    assert "tools" in enriched.capabilities
    assert unknown.name == "Experimental"
    assert unknown.max_tokens == 0


def test_fallback_models_cover_static_table() -> None:
    models = ModelMetadataRegistry("gemini").fallback_models()
    ids = {m.id for m in models}
    assert "gemini-2.5-flash" in ids
    assert all(m.provider == "gemini" for m in models)


def test_unknown_provider_has_no_static_models() -> None:
    assert ModelMetadataRegistry("llamacpp").fallback_models() == []
