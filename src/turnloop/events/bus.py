"""Cursor-ordered, multi-channel event bus with durable mirroring.

Every emitted event gets the next cursor, lands in a bounded in-memory
timeline, is fanned out synchronously to matching live streams and
listeners, and is appended to the attached store in the background.
A failed append never blocks delivery; the record waits in a retry queue
until `flush_failed_events()` gets it to the store.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from turnloop.events.types import ALL_CHANNELS, Event, channel_for
from turnloop.logging import session_logger

if TYPE_CHECKING:
    from turnloop.store.base import Store

DEFAULT_MEMORY_CAP = 10_000

EventHandler = Callable[[Event], Any]


class EventStream:
    """Live async iterator over bus events.

    The stream is registered with the bus when it is created, so nothing
    emitted after `subscribe()` returns can be missed. When a `since`
    bookmark was given, the first iteration replays history (durable store,
    retry queue and memory) before switching to live events. Cursors are
    yielded strictly increasing, without duplicates.
    """

    def __init__(
        self,
        bus: EventBus,
        channels: frozenset[str],
        kinds: frozenset[str] | None,
        since: int | None,
    ) -> None:
        self._bus = bus
        self._channels = channels
        self._kinds = kinds
        self._since = since
        self._last = since if since is not None else -1
        self._needs_replay = since is not None
        self._backlog: deque[Event] = deque()
        self._live: deque[Event] = deque()
        self._waiter: asyncio.Future[None] | None = None
        self._closed = False
        self._ended = False

    def accepts(self, event: Event) -> bool:
        if event.channel not in self._channels:
            return False
        return self._kinds is None or event.type in self._kinds

    @property
    def last_cursor(self) -> int:
        """Cursor of the last event yielded (the bookmark to resume from)."""
        return self._last

    def _push(self, event: Event) -> None:
        if self._closed or self._ended:
            return
        self._live.append(event)
        self._wake()

    def _wake(self) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

    def _end(self) -> None:
        """Stop after the buffered events have been consumed."""
        self._ended = True
        self._wake()

    def close(self) -> None:
        """Stop immediately and detach from the bus."""
        self._closed = True
        self._backlog.clear()
        self._live.clear()
        self._bus._detach(self)
        self._wake()

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> Event:
        if self._needs_replay:
            self._needs_replay = False
            self._backlog.extend(await self._bus._replay(self._since, self))

        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._backlog:
                event = self._backlog.popleft()
            elif self._live:
                event = self._live.popleft()
            elif self._ended:
                self._bus._detach(self)
                raise StopAsyncIteration
            else:
                self._waiter = asyncio.get_running_loop().create_future()
                try:
                    await self._waiter
                finally:
                    self._waiter = None
                continue

            # Live events already covered by the replay
            if event.cursor <= self._last:
                continue
            self._last = event.cursor
            return event


class EventBus:
    """Per-session event log.

    Args:
        memory_cap: Maximum events kept in memory. On overflow the timeline
            keeps only the most recent half.
    """

    def __init__(self, memory_cap: int = DEFAULT_MEMORY_CAP) -> None:
        if memory_cap < 2:
            raise ValueError("memory_cap must be at least 2")
        self._memory_cap = memory_cap
        self._cursor = -1
        self._timeline: list[Event] = []
        self._streams: set[EventStream] = set()
        self._listeners: dict[str, list[EventHandler]] = {}

        self._store: Store | None = None
        self._session_id: str | None = None
        self._log = session_logger(None, "events")
        self._failed: dict[int, dict[str, Any]] = {}
        self._in_flight: set[asyncio.Task[None]] = set()

    def attach_store(self, store: Store, session_id: str) -> None:
        """Mirror every subsequent event to `store` under `session_id`."""
        self._store = store
        self._session_id = session_id
        self._log = session_logger(session_id, "events")

    @property
    def cursor(self) -> int:
        """Cursor of the most recently emitted event (-1 before the first)."""
        return self._cursor

    @property
    def memory_cap(self) -> int:
        return self._memory_cap

    def restore_cursor(self, cursor: int) -> None:
        """Continue numbering after `cursor` (used when resuming a session)."""
        if cursor > self._cursor:
            self._cursor = cursor

    @property
    def failed_events(self) -> list[dict[str, Any]]:
        """Records whose durable append failed, in cursor order."""
        return [self._failed[c] for c in sorted(self._failed)]

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit(self, event_type: str, **payload: Any) -> Event:
        """Assign the next cursor and deliver an event.

        Args:
            event_type: Event type, e.g. "tool_use". The channel follows from it.
            **payload: Type specific fields.

        Returns:
            The emitted Event.
        """
        self._cursor += 1
        event = Event(
            cursor=self._cursor,
            event_id=uuid.uuid4().hex,
            timestamp=time.time(),
            type=event_type,
            channel=channel_for(event_type).value,
            payload=payload,
        )

        self._timeline.append(event)
        if len(self._timeline) > self._memory_cap:
            self._timeline = self._timeline[-(self._memory_cap // 2) :]

        if self._store is not None:
            self._persist(event)

        for stream in list(self._streams):
            if stream.accepts(event):
                stream._push(event)

        for handler in self._listeners.get(event_type, []) + self._listeners.get("*", []):
            try:
                handler(event)
            except Exception:
                self._log.exception("Event handler for %s failed", event_type)

        return event

    def _persist(self, event: Event) -> None:
        record = event.to_record()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to append from; keep it for flush_failed_events()
            self._failed[event.cursor] = record
            return
        task = loop.create_task(self._append(self._store, self._session_id, record))  # type: ignore[arg-type]
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _append(self, store: Store, session_id: str, record: dict[str, Any]) -> None:
        try:
            await store.append_event(session_id, record)
        except Exception as e:
            self._failed[record["cursor"]] = record
            self._log.error("Failed to persist event %d (%s): %s", record["cursor"], record["type"], e)

    async def drain(self) -> None:
        """Wait until every in-flight durable append has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def flush_failed_events(self) -> int:
        """Retry the durable append of every failed event.

        Returns:
            Number of events that reached the store. Events that fail again
            stay queued.
        """
        if self._store is None or not self._failed:
            return 0
        await self.drain()
        flushed = 0
        for cursor in sorted(self._failed):
            record = self._failed[cursor]
            try:
                await self._store.append_event(self._session_id, record)  # type: ignore[arg-type]
            except Exception as e:
                self._log.warning("Retry of event %d failed: %s", cursor, e)
                continue
            del self._failed[cursor]
            flushed += 1
        if flushed:
            await self._store.flush_events(self._session_id)
            self._log.info("Flushed %d failed event(s)", flushed)
        return flushed

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def subscribe(
        self,
        channels: Iterable[str] | str = ("progress",),
        *,
        kinds: Iterable[str] | None = None,
        since: int | None = None,
    ) -> EventStream:
        """Open a live stream of events.

        Args:
            channels: Channel names to receive ("progress", "control",
                "monitor"), or "*" for all of them.
            kinds: Optional event types to keep within those channels.
            since: Bookmark cursor. History after it is replayed first.
        """
        if channels == "*":
            channel_set = frozenset(ALL_CHANNELS)
        elif isinstance(channels, str):
            channel_set = frozenset({channels})
        else:
            channel_set = frozenset(channels)
        unknown = channel_set - set(ALL_CHANNELS)
        if unknown:
            raise ValueError(f"Unknown channel(s): {', '.join(sorted(unknown))}")

        stream = EventStream(self, channel_set, frozenset(kinds) if kinds else None, since)
        self._streams.add(stream)
        return stream

    def _detach(self, stream: EventStream) -> None:
        self._streams.discard(stream)

    async def _replay(self, since: int | None, stream: EventStream) -> list[Event]:
        """History after `since` that `stream` accepts, merged from every source."""
        bookmark = -1 if since is None else since
        merged: dict[int, Event] = {e.cursor: e for e in self._timeline if e.cursor > bookmark}
        for cursor, record in self._failed.items():
            if cursor > bookmark:
                merged.setdefault(cursor, Event.from_record(record))

        oldest_in_memory = self._timeline[0].cursor if self._timeline else self._cursor + 1
        if self._store is not None and bookmark + 1 < oldest_in_memory:
            await self.drain()
            try:
                records = await self._store.read_events(self._session_id, since=since)  # type: ignore[arg-type]
            except Exception as e:
                self._log.error("Replay from store failed: %s", e)
                records = []
            for record in records:
                merged.setdefault(int(record["cursor"]), Event.from_record(record))

        return [merged[c] for c in sorted(merged) if stream.accepts(merged[c])]

    def timeline(self, since: int | None = None) -> list[Event]:
        """In-memory events after `since` (all of them when None)."""
        if since is None:
            return list(self._timeline)
        return [e for e in self._timeline if e.cursor > since]

    def on(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register a synchronous listener ("*" for every type).

        Returns:
            A function that removes the listener.
        """
        self._listeners.setdefault(event_type, []).append(handler)

        def off() -> None:
            handlers = self._listeners.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return off

    async def close(self) -> None:
        """End every stream and wait for in-flight persistence."""
        for stream in list(self._streams):
            stream._end()
        self._listeners.clear()
        await self.drain()
