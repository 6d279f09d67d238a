"""Store protocol: durable per-session persistence.

Each session owns a set of named records (messages, tool-call records,
todos, meta), channel-partitioned event logs, history records and
snapshots. Implementations must make committed writes survive a crash.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from turnloop.core.types import Message, SessionInfo, Snapshot, ToolCallRecord


@runtime_checkable
class Store(Protocol):
    """Async persistence API used by the engine and the event bus."""

    # runtime/
    async def save_messages(self, session_id: str, messages: list[Message]) -> None: ...

    async def load_messages(self, session_id: str) -> list[Message]: ...

    async def save_tool_call_records(
        self, session_id: str, records: list[ToolCallRecord]
    ) -> None: ...

    async def load_tool_call_records(self, session_id: str) -> list[ToolCallRecord]: ...

    async def save_todos(self, session_id: str, snapshot: dict[str, Any]) -> None: ...

    async def load_todos(self, session_id: str) -> dict[str, Any] | None: ...

    # events/
    async def append_event(self, session_id: str, record: dict[str, Any]) -> None: ...

    async def read_events(
        self,
        session_id: str,
        *,
        channel: str | None = None,
        since: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def flush_events(self, session_id: str | None = None) -> None: ...

    # history/
    async def save_history_window(self, session_id: str, window: dict[str, Any]) -> None: ...

    async def load_history_windows(self, session_id: str) -> list[dict[str, Any]]: ...

    async def save_compression_record(self, session_id: str, record: dict[str, Any]) -> None: ...

    async def load_compression_records(self, session_id: str) -> list[dict[str, Any]]: ...

    async def save_recovered_file(self, session_id: str, record: dict[str, Any]) -> None: ...

    async def load_recovered_files(self, session_id: str) -> list[dict[str, Any]]: ...

    # snapshots/
    async def save_snapshot(self, session_id: str, snapshot: Snapshot) -> None: ...

    async def load_snapshot(self, session_id: str, snapshot_id: str) -> Snapshot | None: ...

    async def list_snapshots(self, session_id: str) -> list[Snapshot]: ...

    # meta
    async def save_meta(self, session_id: str, info: SessionInfo) -> None: ...

    async def load_meta(self, session_id: str) -> SessionInfo | None: ...

    # lifecycle
    async def exists(self, session_id: str) -> bool: ...

    async def delete(self, session_id: str) -> None: ...

    async def list(self, prefix: str | None = None) -> list[str]: ...

    async def close(self) -> None: ...


def merge_event_records(*sources: list[dict[str, Any]], since: int | None = None) -> list[dict[str, Any]]:
    """Combine event records, keeping the first copy of each cursor, in cursor order.

    `since` is a bookmark: only records with a cursor strictly after it are kept.
    """
    seen: dict[int, dict[str, Any]] = {}
    for source in sources:
        for record in source:
            cursor = int(record["cursor"])
            if since is not None and cursor <= since:
                continue
            seen.setdefault(cursor, record)
    return [seen[c] for c in sorted(seen)]
