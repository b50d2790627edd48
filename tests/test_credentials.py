"""API key rotation and OAuth refresh."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any
from urllib.parse import parse_qs

from hypothesis import given, settings
from hypothesis import strategies as st
import httpx
import pytest

from providerkit.config import OAuthCredentialSet
from providerkit.credentials import TOKEN_ENDPOINTS, KeyPool, OAuthManager, TokenEndpoint
from providerkit.credentials.keys import MAX_BACKOFF_S
from providerkit.errors import AuthenticationError, RateLimitError, ServerError
from providerkit.metrics import MetricEventType, MetricsRecorder
from tests.helpers import CollectingSink, Recorder, json_response

pytestmark = pytest.mark.unit

# =============================================================================
# KeyPool
# =============================================================================


@given(keys=st.lists(st.text(min_size=1, max_size=8), min_size=1, max_size=6, unique=True))
@settings(max_examples=25, deadline=None, derandomize=True)
def test_healthy_keys_rotate_evenly(keys: list[str]) -> None:
    pool = KeyPool("p", keys)
    picks = [pool.next_key() for _ in range(len(keys) * 2)]
    assert picks == keys + keys


def test_duplicate_and_empty_keys_are_dropped() -> None:
    pool = KeyPool("p", ["a", "", "b", "a"])
    assert pool.keys == ["a", "b"]
    assert len(pool) == 2


def test_failed_key_is_skipped_during_backoff() -> None:
    pool = KeyPool("p", ["a", "b"])
    pool.report_failure("a", RateLimitError("429"))

    assert [pool.next_key() for _ in range(3)] == ["b", "b", "b"]
    assert pool.health("a").failure_count == 1


def test_when_all_keys_back_off_the_earliest_window_wins() -> None:
    pool = KeyPool("p", ["a", "b"])
    pool.report_failure("a")
    pool.report_failure("a")  # 2s window
    pool.report_failure("b")  # 1s window

    assert pool.next_key() == "b"


def test_backoff_grows_and_caps() -> None:
    pool = KeyPool("p", ["a"])
    for _ in range(12):
        pool.report_failure("a")
    health = pool.health("a")
    assert not health.healthy
    assert health.backoff_until - health.last_failure <= MAX_BACKOFF_S


def test_success_resets_health() -> None:
    pool = KeyPool("p", ["a"])
    for _ in range(3):
        pool.report_failure("a")
    pool.report_success("a")
    health = pool.health("a")
    assert health.healthy
    assert health.failure_count == 0
    assert health.backoff_until == 0.0


def test_health_returns_a_copy() -> None:
    pool = KeyPool("p", ["a"])
    pool.health("a").failure_count = 99
    assert pool.health("a").failure_count == 0


def test_empty_pool_raises_auth_error() -> None:
    with pytest.raises(AuthenticationError):
        KeyPool("p", []).next_key()


@pytest.mark.asyncio
async def test_failover_moves_to_next_key_on_credential_errors() -> None:
    pool = KeyPool("p", ["bad", "good"])
    seen: list[str] = []

    async def op(key: str) -> str:
        seen.append(key)
        if key == "bad":
            raise AuthenticationError("401", status_code=401)
        return f"ok:{key}"

    assert await pool.execute_with_failover(op) == "ok:good"
    assert seen == ["bad", "good"]
    assert pool.health("bad").failure_count == 1
    assert pool.health("good").last_success > 0


@pytest.mark.asyncio
async def test_failover_surfaces_other_errors_immediately() -> None:
    pool = KeyPool("p", ["a", "b"])
    seen: list[str] = []

    async def op(key: str) -> str:
        seen.append(key)
        raise ServerError("500")

    with pytest.raises(ServerError):
        await pool.execute_with_failover(op)
    assert seen == ["a"]
    assert pool.health("a").failure_count == 0


@pytest.mark.asyncio
async def test_failover_reraises_last_error_after_full_traversal() -> None:
    pool = KeyPool("p", ["a", "b"])

    async def op(key: str) -> str:
        raise RateLimitError(f"limited {key}")

    with pytest.raises(RateLimitError, match="limited b"):
        await pool.execute_with_failover(op)


@pytest.mark.asyncio
async def test_requests_spread_across_keys() -> None:
    pool = KeyPool("p", ["a", "b", "c"])

    async def op(key: str) -> str:
        return key

    assert [await pool.execute_with_failover(op) for _ in range(4)] == ["a", "b", "c", "a"]


# =============================================================================
# OAuth
# =============================================================================

_ENDPOINT = TokenEndpoint("https://auth.example.test/token", default_client_id="cid")


def _expired(**kwargs: Any) -> OAuthCredentialSet:
    values: dict[str, Any] = {
        "id": "primary",
        "access_token": "old-access",
        "refresh_token": "old-refresh",
        "expires_at": datetime.now(timezone.utc) - timedelta(minutes=5),
        **kwargs,
    }
    return OAuthCredentialSet(**values)


def _token_reply(access: str = "new-access", **extra: Any) -> httpx.Response:
    return json_response({"access_token": access, "expires_in": 3600, **extra})


@pytest.mark.asyncio
async def test_refresh_updates_credential_and_notifies_once() -> None:
    calls: list[tuple[Any, ...]] = []

    def on_refresh(*args: Any) -> None:
        calls.append(args)

    cred = _expired(on_token_refresh=on_refresh)
    recorder = Recorder().add(_token_reply())
    sink = CollectingSink()
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager(
            "anthropic",
            [cred],
            endpoint=_ENDPOINT,
            client=client,
            metrics=MetricsRecorder("anthropic", "anthropic", sink),
        )
        token = await manager.ensure_fresh(cred)
        again = await manager.ensure_fresh(cred)

    assert token == again == "new-access"
    assert len(recorder.requests) == 1
    form = parse_qs(recorder.requests[0].content.decode())
    assert form == {
        "grant_type": ["refresh_token"],
        "refresh_token": ["old-refresh"],
        "client_id": ["cid"],
    }
    assert cred.refresh_count == 1
    assert cred.last_refresh is not None
    assert cred.expires_at is not None and cred.expires_at > datetime.now(timezone.utc)
    # The server did not rotate the refresh token.
    assert cred.refresh_token == "old-refresh"
    assert calls == [("primary", "new-access", "old-refresh", cred.expires_at)]
    assert len(sink.of_type(MetricEventType.TOKEN_REFRESH)) == 1


@pytest.mark.asyncio
async def test_refresh_sends_own_client_credentials() -> None:
    cred = _expired(client_id="mine", client_secret="shh")
    recorder = Recorder().add(_token_reply())
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        await manager.ensure_fresh(cred)

    form = parse_qs(recorder.requests[0].content.decode())
    assert form["client_id"] == ["mine"]
    assert form["client_secret"] == ["shh"]


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_stored() -> None:
    cred = _expired()
    recorder = Recorder().add(_token_reply(refresh_token="new-refresh"))
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        await manager.ensure_fresh(cred)
    assert cred.refresh_token == "new-refresh"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh() -> None:
    cred = _expired()
    hits = 0

    async def slow_token(request: httpx.Request) -> httpx.Response:
        nonlocal hits
        hits += 1
        await asyncio.sleep(0.02)
        return _token_reply()

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow_token)) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        tokens = await asyncio.gather(*(manager.ensure_fresh(cred) for _ in range(5)))

    assert tokens == ["new-access"] * 5
    assert hits == 1
    assert cred.refresh_count == 1


@pytest.mark.asyncio
async def test_anthropic_refresh_sends_json_body() -> None:
    cred = _expired(client_id="")
    recorder = Recorder().add(_token_reply())
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager(
            "anthropic", [cred], endpoint=TOKEN_ENDPOINTS["anthropic"], client=client
        )
        await manager.ensure_fresh(cred)

    body = json.loads(recorder.requests[0].content)
    assert body["grant_type"] == "refresh_token"
    assert body["client_id"] == TOKEN_ENDPOINTS["anthropic"].default_client_id


@pytest.mark.asyncio
async def test_refresh_rejection_raises_auth_error() -> None:
    cred = _expired()
    recorder = Recorder().add(json_response({"error": "invalid_grant"}, status=400))
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        with pytest.raises(AuthenticationError) as exc:
            await manager.ensure_fresh(cred)
    assert exc.value.status_code == 400
    assert cred.access_token == "old-access"


@pytest.mark.asyncio
async def test_missing_refresh_token_raises_with_hint() -> None:
    cred = _expired(refresh_token="")
    async with httpx.AsyncClient(transport=Recorder().transport) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        with pytest.raises(AuthenticationError) as exc:
            await manager.ensure_fresh(cred)
    assert exc.value.hint


@pytest.mark.asyncio
async def test_failing_refresh_callback_is_logged_not_raised(
    caplog: pytest.LogCaptureFixture,
) -> None:
    def broken(*_args: Any) -> None:
        raise RuntimeError("disk full")

    cred = _expired(on_token_refresh=broken)
    recorder = Recorder().add(_token_reply())
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        with caplog.at_level(logging.WARNING, logger="providerkit.credentials.oauth"):
            token = await manager.ensure_fresh(cred)

    assert token == "new-access"
    assert "disk full" in caplog.text


@pytest.mark.asyncio
async def test_async_refresh_callback_is_awaited() -> None:
    persisted: list[str] = []

    async def save(cred_id: str, access: str, refresh: str, expires: Any) -> None:
        persisted.append(access)

    cred = _expired(on_token_refresh=save)
    recorder = Recorder().add(_token_reply())
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        await manager.ensure_fresh(cred)
    assert persisted == ["new-access"]


@pytest.mark.asyncio
async def test_rejected_token_is_refreshed_once_and_retried() -> None:
    fresh = datetime.now(timezone.utc) + timedelta(hours=1)
    cred = OAuthCredentialSet(
        id="c", access_token="revoked", refresh_token="r", expires_at=fresh
    )
    recorder = Recorder().add(_token_reply("replacement"))
    used: list[str] = []

    async def op(_cred: OAuthCredentialSet, token: str) -> str:
        used.append(token)
        if token == "revoked":
            raise AuthenticationError("401", status_code=401)
        return "ok"

    async with httpx.AsyncClient(transport=recorder.transport) as client:
        manager = OAuthManager("p", [cred], endpoint=_ENDPOINT, client=client)
        assert await manager.execute_with_failover(op) == "ok"

    assert used == ["revoked", "replacement"]
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_rate_limited_set_rotates_to_next() -> None:
    fresh = datetime.now(timezone.utc) + timedelta(hours=1)
    first = OAuthCredentialSet(id="a", access_token="ta", expires_at=fresh)
    second = OAuthCredentialSet(id="b", access_token="tb", expires_at=fresh)

    async def op(cred: OAuthCredentialSet, token: str) -> str:
        if cred.id == "a":
            raise RateLimitError("429")
        return token

    async with httpx.AsyncClient(transport=Recorder().transport) as client:
        manager = OAuthManager("p", [first, second], endpoint=_ENDPOINT, client=client)
        assert await manager.execute_with_failover(op) == "tb"
