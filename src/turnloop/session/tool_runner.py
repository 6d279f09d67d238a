"""Bounded pool for tool executions within one turn."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class ToolRunner:
    """Run at most `concurrency` tasks at once; the rest wait in FIFO order."""

    def __init__(self, concurrency: int) -> None:
        if concurrency <= 0:
            raise ValueError("ToolRunner requires a positive concurrency limit")
        self._concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._active = 0

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active(self) -> int:
        return self._active

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            self._active += 1
            try:
                return await task()
            finally:
                self._active -= 1
