"""Session event stream."""

from turnloop.events.bus import DEFAULT_MEMORY_CAP, EventBus, EventStream
from turnloop.events.types import ALL_CHANNELS, EVENT_CHANNELS, Channel, Event, channel_for

__all__ = [
    "ALL_CHANNELS",
    "DEFAULT_MEMORY_CAP",
    "EVENT_CHANNELS",
    "Channel",
    "Event",
    "EventBus",
    "EventStream",
    "channel_for",
]
