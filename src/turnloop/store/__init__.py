"""Durable session persistence."""

from turnloop.store.base import Store, merge_event_records
from turnloop.store.json_store import JSONStore
from turnloop.store.memory import MemoryStore

__all__ = ["JSONStore", "MemoryStore", "Store", "merge_event_records"]
