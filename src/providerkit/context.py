"""Cooperative cancellation handle carried through provider operations."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class CancelToken:
    """Cancellation signal shared between a caller and in-flight work.

    Cancelling a token cancels every token derived from it via ``child()``,
    so a virtual provider can hand one child token to each delegate and abort
    them all from the caller's handle.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[CancelToken] = []
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def child(self) -> CancelToken:
        token = CancelToken()
        if self.cancelled:
            token.cancel(self.reason)
        else:
            self._children.append(token)
        return token

    async def run(self, aw: Awaitable[T]) -> T:
        """Await *aw*, cancelling it if this token fires first.

        Raises ``asyncio.CancelledError`` when the token wins the race.
        """
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise asyncio.CancelledError(self.reason)
        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise asyncio.CancelledError(self.reason)
