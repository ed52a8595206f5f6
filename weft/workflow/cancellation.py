"""Cooperative cancellation threaded through every suspension point.

A token wraps an ``asyncio.Event``. Port calls are raced against it with
``guard()``, retry sleeps go through ``sleep()``, and parallel branches get a
``child()`` token so a parent cancel reaches them while a sibling failure can
cancel the branches without touching the parent.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import Any, TypeVar

from weft.workflow.errors import CancellationError

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""
        self._children: list[CancellationToken] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Execution cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        token = CancellationToken()
        self._children.append(token)
        if self.cancelled:
            token.cancel(self._reason)
        return token

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early and raising on cancel."""
        self.raise_if_cancelled()
        if delay > 0:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._event.wait(), timeout=delay)
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the inner task is cancelled and ``CancellationError``
        is raised. The inner task is also cancelled if the caller itself is
        cancelled (e.g. by a surrounding ``asyncio.wait_for`` timeout).
        """
        self.raise_if_cancelled()
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task in done:
            return task.result()
        raise CancellationError(self._reason)
