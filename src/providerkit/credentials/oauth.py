"""OAuth credential sets with refresh-on-demand and rotation.

A provider may carry several OAuth identities. Requests rotate across them
round-robin; before a set is used its access token is refreshed if it is
missing or within 60 seconds of expiry. Refresh for one set is serialized
under that set's lock, so concurrent requests observing an expired token
trigger a single token-endpoint call and all reuse its result.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import inspect
import logging
import threading
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from providerkit.errors import (
    CREDENTIAL_FAILOVER_KINDS,
    AuthenticationError,
    ErrorKind,
    error_kind,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from providerkit.config import OAuthCredentialSet
    from providerkit.metrics import MetricsRecorder

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenEndpoint:
    """Where and how a provider refreshes OAuth tokens."""

    url: str
    default_client_id: str = ""
    #: Send the refresh grant as a JSON body instead of a form.
    json_body: bool = False
    #: Lifetime assumed when the endpoint omits ``expires_in``.
    default_expires_in_s: int = 3600


TOKEN_ENDPOINTS: dict[str, TokenEndpoint] = {
    "anthropic": TokenEndpoint(
        "https://console.anthropic.com/v1/oauth/token",
        default_client_id="9d1c250a-e61b-44d9-88ed-5944d1962f5e",
        json_body=True,
    ),
    "openai": TokenEndpoint(
        "https://auth.openai.com/oauth/token",
        default_client_id="app_EMoamEEZ73f0CkXaXp7hrann",
    ),
    "gemini": TokenEndpoint("https://oauth2.googleapis.com/token"),
    "qwen": TokenEndpoint(
        "https://chat.qwen.ai/api/v1/oauth2/token",
        default_client_id="f0304373b74a44d2b584a3fb70ca9e56",
    ),
}


class OAuthManager:
    """Refresh and rotate the OAuth credential sets of one provider."""

    def __init__(
        self,
        provider: str,
        credentials: list[OAuthCredentialSet],
        *,
        endpoint: TokenEndpoint | None,
        client: httpx.AsyncClient,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self.provider = provider
        self.endpoint = endpoint
        self._credentials = list(credentials)
        self._client = client
        self._metrics = metrics
        self._cursor = 0
        self._cursor_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[OAuthCredentialSet]:
        return list(self._credentials)

    def add(self, cred: OAuthCredentialSet) -> None:
        with self._cursor_lock:
            self._credentials = [c for c in self._credentials if c.id != cred.id]
            self._credentials.append(cred)

    def next_credential(self, *, exclude: set[str] | None = None) -> OAuthCredentialSet:
        """Return the set at the cursor and advance it."""
        with self._cursor_lock:
            if not self._credentials:
                raise AuthenticationError(
                    f"No OAuth credentials configured for {self.provider}",
                    provider=self.provider,
                    operation="oauth",
                )
            n = len(self._credentials)
            for offset in range(n):
                idx = (self._cursor + offset) % n
                cred = self._credentials[idx]
                if exclude and cred.id in exclude:
                    continue
                self._cursor = (idx + 1) % n
                return cred
            cred = self._credentials[self._cursor % n]
            self._cursor = (self._cursor + 1) % n
            return cred

    async def ensure_fresh(self, cred: OAuthCredentialSet) -> str:
        """Return a usable access token for *cred*, refreshing when needed."""
        if not cred.needs_refresh():
            return cred.access_token
        async with cred.lock:
            # Another task may have refreshed while we waited.
            if not cred.needs_refresh():
                return cred.access_token
            await self._refresh_locked(cred)
            return cred.access_token

    async def refresh(self, cred: OAuthCredentialSet) -> str:
        """Force a refresh of *cred* regardless of expiry."""
        async with cred.lock:
            await self._refresh_locked(cred)
            return cred.access_token

    async def _refresh_locked(self, cred: OAuthCredentialSet) -> None:
        if self.endpoint is None:
            raise AuthenticationError(
                f"Token refresh is not supported for {self.provider}",
                provider=self.provider,
                operation="refresh_token",
            )
        if not cred.refresh_token:
            raise AuthenticationError(
                f"Credential {cred.id!r} has no refresh token",
                provider=self.provider,
                operation="refresh_token",
                hint="Re-run the OAuth login flow to obtain a refresh token.",
            )

        payload = _refresh_payload(cred, self.endpoint)
        try:
            if self.endpoint.json_body:
                response = await self._client.post(
                    self.endpoint.url,
                    json=payload,
                    headers={"Accept": "application/json"},
                )
            else:
                response = await self._client.post(
                    self.endpoint.url,
                    data=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            log.warning("Token refresh for %s/%s failed: %s", self.provider, cred.id, exc)
            raise AuthenticationError(
                f"Token refresh request failed: {exc}",
                provider=self.provider,
                operation="refresh_token",
            ) from exc

        if response.status_code != 200:
            log.warning(
                "Token refresh for %s/%s returned HTTP %d",
                self.provider,
                cred.id,
                response.status_code,
            )
            raise AuthenticationError(
                f"Token refresh failed: {response.text[:200]}",
                provider=self.provider,
                operation="refresh_token",
                status_code=response.status_code,
            )

        try:
            body: dict[str, Any] = response.json()
            access_token = body["access_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthenticationError(
                "Token refresh response is missing access_token",
                provider=self.provider,
                operation="refresh_token",
            ) from exc

        now = datetime.now(timezone.utc)
        expires_in = body.get("expires_in") or self.endpoint.default_expires_in_s
        cred.access_token = access_token
        # Keep the old refresh token unless the server rotated it.
        if body.get("refresh_token"):
            cred.refresh_token = body["refresh_token"]
        cred.expires_at = now + timedelta(seconds=float(expires_in))
        cred.refresh_count += 1
        cred.last_refresh = now
        log.debug("Refreshed OAuth token for %s/%s", self.provider, cred.id)

        if self._metrics is not None:
            self._metrics.record_token_refresh(cred.id)
        await self._notify(cred)

    async def _notify(self, cred: OAuthCredentialSet) -> None:
        callback = cred.on_token_refresh
        if callback is None:
            return
        try:
            result = callback(cred.id, cred.access_token, cred.refresh_token, cred.expires_at)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            # The token is valid in memory even if persisting it failed.
            log.warning("Failed to persist refreshed token for %s: %s", cred.id, exc)

    async def execute_with_failover(
        self, operation: Callable[[OAuthCredentialSet, str], Awaitable[T]]
    ) -> T:
        """Run *operation* with a fresh token, rotating sets on credential errors.

        An auth rejection of a token that was not just refreshed forces one
        refresh of the same set before moving on.
        """
        tried: set[str] = set()
        last_exc: BaseException | None = None
        for _ in range(max(1, len(self._credentials))):
            cred = self.next_credential(exclude=tried)
            if cred.id in tried:
                break
            tried.add(cred.id)
            try:
                refreshes_before = cred.refresh_count
                token = await self.ensure_fresh(cred)
                try:
                    return await operation(cred, token)
                except Exception as exc:
                    just_refreshed = cred.refresh_count != refreshes_before
                    if (
                        error_kind(exc) is not ErrorKind.AUTH
                        or just_refreshed
                        or not cred.refresh_token
                        or self.endpoint is None
                    ):
                        raise
                    token = await self.refresh(cred)
                    return await operation(cred, token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if error_kind(exc) not in CREDENTIAL_FAILOVER_KINDS:
                    raise
                log.warning(
                    "OAuth credential %s for %s failed (%s); trying next",
                    cred.id,
                    self.provider,
                    exc,
                )
                last_exc = exc
        if last_exc is None:
            raise RuntimeError("credential rotation ended without an attempt")  # pragma: no cover
        raise last_exc


def _refresh_payload(cred: OAuthCredentialSet, endpoint: TokenEndpoint) -> dict[str, str]:
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": cred.refresh_token,
        "client_id": cred.client_id or endpoint.default_client_id,
    }
    if cred.client_secret:
        payload["client_secret"] = cred.client_secret
    return payload
