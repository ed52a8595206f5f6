"""Shared fakes for workflow tests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from weft.observe.metrics import get_metrics

Handler = Callable[[Any], Awaitable[Any] | Any]


class FakePort:
    """Agent/tool executor fake dispatching on the agent id or tool name.

    Handlers may be plain values, exceptions (raised) or callables taking the
    resolved input (sync or async).
    """

    def __init__(self, handlers: dict[str, Any] | None = None) -> None:
        self.handlers = handlers or {}
        self.calls: list[tuple[str, Any]] = []

    async def execute(self, name: str, input: Any, ctx: Any) -> Any:
        self.calls.append((name, input))
        handler = self.handlers.get(name, f"{name}-done")
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            result = handler(input)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return handler

    def count(self, name: str) -> int:
        return sum(1 for called, _ in self.calls if called == name)


class FakeRAG:
    def __init__(self) -> None:
        self.queries: list[tuple[str, Any, int]] = []

    async def retrieve(self, pipeline_id: str, query: Any, top_k: int) -> list[str]:
        self.queries.append((pipeline_id, query, top_k))
        return [f"{pipeline_id}:{query}:{i}" for i in range(top_k)]


async def hang(_input: Any) -> None:
    await asyncio.sleep(30)


@pytest.fixture(autouse=True)
def _reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()
