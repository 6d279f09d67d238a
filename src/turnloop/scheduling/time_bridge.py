"""Wall-clock triggers fed into a Scheduler's task queue."""

from __future__ import annotations

import asyncio
import datetime
import inspect
import time
from collections.abc import Callable
from typing import Any

from turnloop.logging import get_logger
from turnloop.scheduling.scheduler import Scheduler, _generate_id

log = get_logger("scheduler.time")


def parse_daily_cron(expr: str) -> tuple[int, int]:
    """Minute and hour of a "M H * * *" expression.

    Only fixed daily times are supported; day, month and weekday fields are
    ignored.
    """
    parts = expr.split()
    if len(parts) != 5:
        raise ValueError(f"Unsupported cron expression: {expr}")
    try:
        minute, hour = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Cron expression must be numeric minutes/hours: {expr}") from None
    if not (0 <= minute < 60 and 0 <= hour < 24):
        raise ValueError(f"Cron time out of range: {expr}")
    return minute, hour


def next_daily(minute: int, hour: int, now: datetime.datetime | None = None) -> datetime.datetime:
    now = now or datetime.datetime.now()
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += datetime.timedelta(days=1)
    return candidate


class TimeBridge:
    """Timers whose callbacks run through `scheduler.enqueue`.

    Late firings beyond `drift_tolerance_ms` are logged.
    """

    def __init__(self, scheduler: Scheduler, *, drift_tolerance_ms: int = 5_000) -> None:
        self._scheduler = scheduler
        self._drift_tolerance = drift_tolerance_ms / 1000
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def _check_drift(self, timer_id: str, due: float, spec: str) -> None:
        drift = abs(time.time() - due)
        if drift > self._drift_tolerance:
            log.warning("Timer %s (%s) drifted by %.0fms", timer_id, spec, drift * 1000)

    def _fire(self, timer_id: str, due: float, spec: str, kind: str, callback: Callable[[], Any]) -> None:
        async def run() -> None:
            self._check_drift(timer_id, due, spec)
            result = callback()
            if inspect.isawaitable(result):
                await result
            self._scheduler.notify_external_trigger({"task_id": timer_id, "spec": spec, "kind": kind})

        self._scheduler.enqueue(run)

    def every_minutes(self, minutes: float, callback: Callable[[], Any]) -> str:
        if minutes <= 0:
            raise ValueError("every_minutes: interval must be positive")
        interval = minutes * 60
        timer_id = _generate_id("minutes")
        spec = f"every:{minutes:g}m"
        loop = asyncio.get_running_loop()

        def schedule_next() -> None:
            due = time.time() + interval
            self._timers[timer_id] = loop.call_later(interval, tick, due)

        def tick(due: float) -> None:
            self._fire(timer_id, due, spec, "time", callback)
            if timer_id in self._timers:
                schedule_next()

        schedule_next()
        return timer_id

    def cron(self, expr: str, callback: Callable[[], Any]) -> str:
        minute, hour = parse_daily_cron(expr)
        timer_id = _generate_id("cron")
        loop = asyncio.get_running_loop()

        def schedule_next() -> None:
            due = next_daily(minute, hour).timestamp()
            self._timers[timer_id] = loop.call_later(max(0.0, due - time.time()), tick, due)

        def tick(due: float) -> None:
            self._fire(timer_id, due, expr, "cron", callback)
            if timer_id in self._timers:
                schedule_next()

        schedule_next()
        return timer_id

    def stop(self, timer_id: str) -> None:
        handle = self._timers.pop(timer_id, None)
        if handle is not None:
            handle.cancel()

    def dispose(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    @property
    def active(self) -> list[str]:
        return list(self._timers)
