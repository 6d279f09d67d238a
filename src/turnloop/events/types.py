"""Event record and channel definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Channel(Enum):
    """Named partitions of a session's event stream."""

    PROGRESS = "progress"
    CONTROL = "control"
    MONITOR = "monitor"


ALL_CHANNELS: tuple[str, ...] = tuple(c.value for c in Channel)

EVENT_CHANNELS: dict[str, Channel] = {
    # progress: what the model and tools are doing
    "text_chunk": Channel.PROGRESS,
    "text": Channel.PROGRESS,
    "tool_use": Channel.PROGRESS,
    "tool_result": Channel.PROGRESS,
    "usage": Channel.PROGRESS,
    "done": Channel.PROGRESS,
    # control: things a caller may need to act on
    "permission_ask": Channel.CONTROL,
    "permission_decision": Channel.CONTROL,
    "state": Channel.CONTROL,
    # monitor: bookkeeping and side channels
    "messages_update": Channel.MONITOR,
    "commit": Channel.MONITOR,
    "step_complete": Channel.MONITOR,
    "resume": Channel.MONITOR,
    "forked": Channel.MONITOR,
    "error": Channel.MONITOR,
    "todo_changed": Channel.MONITOR,
    "file_changed": Channel.MONITOR,
    "scheduler_triggered": Channel.MONITOR,
    "custom": Channel.MONITOR,
}

TERMINAL_EVENT_TYPES = frozenset({"done"})


def channel_for(event_type: str) -> Channel:
    """Channel an event type belongs to; unknown types go to monitor."""
    return EVENT_CHANNELS.get(event_type, Channel.MONITOR)


@dataclass(frozen=True, slots=True)
class Event:
    """An emitted event. Immutable once emitted.

    Attributes:
        cursor: Strictly increasing position within the session
        event_id: Unique id
        timestamp: Unix time of emission
        type: Event type (e.g. "tool_use", "permission_ask")
        channel: Channel name
        payload: Type specific fields
    """

    cursor: int
    event_id: str
    timestamp: float
    type: str
    channel: str
    payload: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_record(self) -> dict[str, Any]:
        """Serialisable form; callables (e.g. `respond`) are left out."""
        return {
            "cursor": self.cursor,
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "type": self.type,
            "channel": self.channel,
            "payload": {k: v for k, v in self.payload.items() if not callable(v)},
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Event:
        return cls(
            cursor=int(record["cursor"]),
            event_id=record.get("event_id", ""),
            timestamp=float(record.get("timestamp", 0.0)),
            type=record["type"],
            channel=record.get("channel", Channel.MONITOR.value),
            payload=dict(record.get("payload") or {}),
        )
