"""Cancellation token threaded through network calls, backoff and tools.

A token is created per run-client operation.  Anything awaited under
``token.run()`` (or iterated under ``token.guard()``) is raced against the
token's event; when the token fires, the pending task is cancelled and
``CancellationError`` is raised in its place.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Awaitable
from typing import TypeVar

from termagent.errors import CancellationError

T = TypeVar("T")


class CancellationToken:
    """One-shot abort signal for a single in-flight operation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Operation aborted") -> None:
        """Fire the token.  Idempotent: the first reason wins."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "Operation aborted")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise CancellationError(self.reason or "Operation aborted")

    async def guard(self, iterable: AsyncIterable[T]) -> AsyncIterator[T]:
        """Iterate *iterable*, aborting between or during items on cancel."""
        iterator = aiter(iterable)
        while True:
            try:
                item = await self.run(anext(iterator))
            except StopAsyncIteration:
                return
            yield item

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds; raises CancellationError if the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return
        raise CancellationError(self.reason or "Operation aborted")
