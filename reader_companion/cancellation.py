"""Cancellation tokens passed explicitly through every async call chain.

A token is created by GenerationRegistry.begin() for each generation attempt.
Cancelling it stops the in-flight provider call at the next suspension point:
await_cancellable() races the awaited work against the token and raises
AbortError as soon as the token fires.

Tokens can be linked: an outer token (for example one owned by the caller of
a session) forwards its cancellation to the registry's inner token.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from reader_companion.errors import AbortError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "aborted") -> None:
        """Fire the token. Only the first call has an effect."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("cancellation callback failed reason=%s", reason)

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Run callback(reason) on cancel. Returns a function that detaches it."""
        if self._cancelled:
            callback(self._reason or "aborted")
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def link(self, outer: CancellationToken) -> Callable[[], None]:
        """Forward cancellation of `outer` to this token."""
        return outer.add_callback(lambda reason: self.cancel("outer-token-cancelled"))

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AbortError(self._reason or "aborted")

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "aborted"


async def await_cancellable(work: Awaitable[T], token: CancellationToken | None) -> T:
    """Await `work`, abandoning it with AbortError if `token` fires first."""
    if token is None:
        return await work
    token.raise_if_cancelled()

    task = asyncio.ensure_future(work)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    raise AbortError(token.reason or "aborted")
