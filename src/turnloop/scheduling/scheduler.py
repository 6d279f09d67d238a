"""Step-count triggers and a serialised background task queue."""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from turnloop.logging import get_logger

log = get_logger("scheduler")

TriggerKind = Literal["steps", "time", "cron"]

StepCallback = Callable[[dict[str, Any]], Any]
TaskCallback = Callable[[], Any]
TriggerCallback = Callable[[dict[str, Any]], None]


def _generate_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


@dataclass
class StepTask:
    id: str
    every: int
    callback: StepCallback
    last_triggered: int = 0


class Scheduler:
    """Run callbacks as a session's step count grows.

    Args:
        on_trigger: Called with {"task_id", "spec", "kind"} whenever a step
            task fires or a TimeBridge reports a time/cron trigger.
    """

    def __init__(self, on_trigger: TriggerCallback | None = None) -> None:
        self._step_tasks: dict[str, StepTask] = {}
        self._listeners: list[StepCallback] = []
        self._on_trigger = on_trigger
        self._queue_tail: asyncio.Future[None] | None = None
        self._background: set[asyncio.Future[Any]] = set()

    def every_steps(self, every: int, callback: StepCallback) -> str:
        if every <= 0:
            raise ValueError("every_steps: interval must be positive")
        task_id = _generate_id("steps")
        self._step_tasks[task_id] = StepTask(id=task_id, every=every, callback=callback)
        return task_id

    def on_step(self, callback: StepCallback) -> Callable[[], None]:
        """Call `callback({"step_count": n})` on every step. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def off() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return off

    def _run(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            log.exception("Scheduler callback failed")
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._background.add(future)
            future.add_done_callback(self._background_done)

    def _background_done(self, future: asyncio.Future[Any]) -> None:
        self._background.discard(future)
        if not future.cancelled() and future.exception() is not None:
            log.error("Scheduler callback failed: %s", future.exception())

    def notify_step(self, step_count: int) -> None:
        ctx = {"step_count": step_count}
        for listener in list(self._listeners):
            self._run(listener, ctx)

        for task in list(self._step_tasks.values()):
            if step_count - task.last_triggered < task.every:
                continue
            task.last_triggered = step_count
            self._run(task.callback, ctx)
            self._report({"task_id": task.id, "spec": f"steps:{task.every}", "kind": "steps"})

    def enqueue(self, callback: TaskCallback) -> asyncio.Future[None]:
        """Run `callback` after every previously enqueued one. Failures are logged."""
        previous = self._queue_tail

        async def run() -> None:
            if previous is not None:
                await previous
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("Queued scheduler task failed")

        tail = asyncio.ensure_future(run())
        self._queue_tail = tail
        return tail

    async def drain(self) -> None:
        """Wait for the queue and any running async callbacks."""
        if self._queue_tail is not None:
            await self._queue_tail
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def cancel(self, task_id: str) -> None:
        self._step_tasks.pop(task_id, None)

    def clear(self) -> None:
        self._step_tasks.clear()
        self._listeners.clear()

    def notify_external_trigger(self, info: dict[str, Any]) -> None:
        self._report(info)

    def _report(self, info: dict[str, Any]) -> None:
        if self._on_trigger is None:
            return
        try:
            self._on_trigger(info)
        except Exception:
            log.exception("Scheduler trigger callback failed")
