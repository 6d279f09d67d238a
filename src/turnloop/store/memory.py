"""In-process store for tests and throw-away sessions.

Values are deep-copied on the way in and out so callers can never mutate
what is "persisted".
"""

from __future__ import annotations

import copy
from collections import defaultdict
from typing import Any

from turnloop.core.types import Message, SessionInfo, Snapshot, ToolCallRecord
from turnloop.store.base import merge_event_records


class MemoryStore:
    """Store implementation backed by dictionaries."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}

    def _bucket(self, session_id: str) -> dict[str, Any]:
        bucket = self._sessions.get(session_id)
        if bucket is None:
            bucket = {
                "messages": [],
                "tool_calls": [],
                "todos": None,
                "events": defaultdict(list),
                "windows": [],
                "compressions": [],
                "recovered": [],
                "snapshots": {},
                "meta": None,
            }
            self._sessions[session_id] = bucket
        return bucket

    async def save_messages(self, session_id: str, messages: list[Message]) -> None:
        self._bucket(session_id)["messages"] = [m.to_dict() for m in messages]

    async def load_messages(self, session_id: str) -> list[Message]:
        bucket = self._sessions.get(session_id)
        if bucket is None:
            return []
        return [Message.from_dict(m) for m in bucket["messages"]]

    async def save_tool_call_records(self, session_id: str, records: list[ToolCallRecord]) -> None:
        self._bucket(session_id)["tool_calls"] = [r.to_dict() for r in records]

    async def load_tool_call_records(self, session_id: str) -> list[ToolCallRecord]:
        bucket = self._sessions.get(session_id)
        if bucket is None:
            return []
        return [ToolCallRecord.from_dict(copy.deepcopy(r)) for r in bucket["tool_calls"]]

    async def save_todos(self, session_id: str, snapshot: dict[str, Any]) -> None:
        self._bucket(session_id)["todos"] = copy.deepcopy(snapshot)

    async def load_todos(self, session_id: str) -> dict[str, Any] | None:
        bucket = self._sessions.get(session_id)
        return copy.deepcopy(bucket["todos"]) if bucket else None

    async def append_event(self, session_id: str, record: dict[str, Any]) -> None:
        self._bucket(session_id)["events"][record["channel"]].append(copy.deepcopy(record))

    async def read_events(
        self,
        session_id: str,
        *,
        channel: str | None = None,
        since: int | None = None,
    ) -> list[dict[str, Any]]:
        bucket = self._sessions.get(session_id)
        if bucket is None:
            return []
        channels = [channel] if channel else list(bucket["events"])
        sources = [bucket["events"].get(name, []) for name in channels]
        return copy.deepcopy(merge_event_records(*sources, since=since))

    async def flush_events(self, session_id: str | None = None) -> None:
        return None

    async def save_history_window(self, session_id: str, window: dict[str, Any]) -> None:
        self._bucket(session_id)["windows"].append(copy.deepcopy(window))

    async def load_history_windows(self, session_id: str) -> list[dict[str, Any]]:
        bucket = self._sessions.get(session_id)
        return copy.deepcopy(bucket["windows"]) if bucket else []

    async def save_compression_record(self, session_id: str, record: dict[str, Any]) -> None:
        self._bucket(session_id)["compressions"].append(copy.deepcopy(record))

    async def load_compression_records(self, session_id: str) -> list[dict[str, Any]]:
        bucket = self._sessions.get(session_id)
        return copy.deepcopy(bucket["compressions"]) if bucket else []

    async def save_recovered_file(self, session_id: str, record: dict[str, Any]) -> None:
        self._bucket(session_id)["recovered"].append(copy.deepcopy(record))

    async def load_recovered_files(self, session_id: str) -> list[dict[str, Any]]:
        bucket = self._sessions.get(session_id)
        return copy.deepcopy(bucket["recovered"]) if bucket else []

    async def save_snapshot(self, session_id: str, snapshot: Snapshot) -> None:
        self._bucket(session_id)["snapshots"][snapshot.id] = snapshot.to_dict()

    async def load_snapshot(self, session_id: str, snapshot_id: str) -> Snapshot | None:
        bucket = self._sessions.get(session_id)
        if bucket is None or snapshot_id not in bucket["snapshots"]:
            return None
        return Snapshot.from_dict(copy.deepcopy(bucket["snapshots"][snapshot_id]))

    async def list_snapshots(self, session_id: str) -> list[Snapshot]:
        bucket = self._sessions.get(session_id)
        if bucket is None:
            return []
        snapshots = [Snapshot.from_dict(copy.deepcopy(s)) for s in bucket["snapshots"].values()]
        return sorted(snapshots, key=lambda s: s.created_at)

    async def save_meta(self, session_id: str, info: SessionInfo) -> None:
        self._bucket(session_id)["meta"] = info.to_dict()

    async def load_meta(self, session_id: str) -> SessionInfo | None:
        bucket = self._sessions.get(session_id)
        if bucket is None or bucket["meta"] is None:
            return None
        return SessionInfo.from_dict(copy.deepcopy(bucket["meta"]))

    async def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def list(self, prefix: str | None = None) -> list[str]:
        ids = sorted(self._sessions)
        return [i for i in ids if i.startswith(prefix)] if prefix else ids

    async def close(self) -> None:
        return None
