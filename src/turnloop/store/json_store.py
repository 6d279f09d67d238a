"""Write-ahead-log protected JSON store.

Layout under ``base_dir`` (session ids are URL-quoted into directory names):

    <session>/
      meta.json
      runtime/messages.json, tool-calls.json, todos.json
      events/progress.log, control.log, monitor.log   (JSON lines)
      history/windows/, compressions/, recovered/
      snapshots/<snapshot-id>.json

Named records are written in three steps: the new value goes to
``<record>.wal``, then to a temp file that is atomically renamed over the
record, then the WAL is removed. A WAL found on read (or by the startup
sweep) means step two or three never finished, and it is replayed first.

Event logs are buffered per channel and appended on a short timer. The
channel's ``.wal`` file mirrors the unflushed buffer line for line, so a
crash mid-buffer is recovered by replaying it into the log.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import shutil
import threading
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import quote, unquote

from filelock import FileLock

from turnloop.config.paths import resolve_store_dir
from turnloop.core.types import Message, SessionInfo, Snapshot, ToolCallRecord
from turnloop.errors import StoreError
from turnloop.events.types import ALL_CHANNELS
from turnloop.logging import get_logger
from turnloop.store.base import merge_event_records

if TYPE_CHECKING:
    from turnloop.config.schema import Config

log = get_logger("store")

T = TypeVar("T")

WAL_SUFFIX = ".wal"
CORRUPTED_SUFFIX = ".corrupted"
LOCK_NAME = ".lock"

_RECORD_FILES = {
    "messages": ("runtime", "messages.json"),
    "tool_calls": ("runtime", "tool-calls.json"),
    "todos": ("runtime", "todos.json"),
    "meta": (None, "meta.json"),
}

_HISTORY_KINDS = ("windows", "compressions", "recovered")


def _write_durable(path: Path, text: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())


def _quarantine(wal: Path) -> Path:
    """Move an unreadable WAL aside for inspection instead of deleting it."""
    target = wal.with_name(wal.name + CORRUPTED_SUFFIX)
    if target.exists():
        target = wal.with_name(f"{wal.name}.{int(time.time() * 1000)}{CORRUPTED_SUFFIX}")
    wal.rename(target)
    log.error("Corrupted WAL moved to %s", target)
    return target


class JSONStore:
    """Durable Store implementation on the local filesystem."""

    def __init__(
        self,
        base_dir: str | Path,
        *,
        flush_interval: float = 0.05,
        sweep_on_start: bool = True,
    ) -> None:
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval

        # Per-record write chains: a new write waits for the previous one
        self._write_chains: dict[str, asyncio.Future[Any]] = {}

        # Event buffering, keyed by (session_id, channel)
        self._event_buffers: dict[tuple[str, str], list[dict[str, Any]]] = {}
        # Channel locks guard buffers and WAL appends only; flush locks serialize log writes
        self._event_locks: dict[tuple[str, str], threading.Lock] = {}
        self._flush_locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._flush_handles: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._flush_tasks: set[asyncio.Task[None]] = set()

        self._sweep_task: asyncio.Task[int] | None = None
        if sweep_on_start:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._recover_sync()
            else:
                self._sweep_task = loop.create_task(asyncio.to_thread(self._recover_sync))

    @classmethod
    def from_config(cls, config: Config, project_root: str | None = None) -> JSONStore:
        """Open the store configured under `config.store`."""
        store_config = config.store
        return cls(
            resolve_store_dir(store_config.base_dir, project_root),
            flush_interval=store_config.event_flush_interval,
            sweep_on_start=store_config.sweep_on_start,
        )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def base_dir(self) -> Path:
        return self._base

    def session_dir(self, session_id: str) -> Path:
        return self._base / quote(session_id, safe="")

    def _record_path(self, session_id: str, name: str) -> Path:
        folder, filename = _RECORD_FILES[name]
        root = self.session_dir(session_id)
        return (root / folder / filename) if folder else root / filename

    def _events_path(self, session_id: str, channel: str) -> Path:
        return self.session_dir(session_id) / "events" / f"{channel}.log"

    def _lock(self, session_id: str) -> FileLock:
        session_dir = self.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        return FileLock(str(session_dir / LOCK_NAME), timeout=10)

    # ------------------------------------------------------------------
    # Named records (WAL protocol)
    # ------------------------------------------------------------------

    async def _chain(self, key: str, fn: Callable[..., T], *args: Any) -> T:
        """Run fn in a worker thread after any earlier write to the same key."""
        previous = self._write_chains.get(key)

        async def run() -> T:
            if previous is not None:
                # The earlier caller already saw its own failure
                with contextlib.suppress(Exception):
                    await previous
            return await asyncio.to_thread(fn, *args)

        task = asyncio.ensure_future(run())
        self._write_chains[key] = task
        try:
            return await task
        finally:
            if self._write_chains.get(key) is task:
                del self._write_chains[key]

    def _write_record_sync(self, session_id: str, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            wal = path.with_name(path.name + WAL_SUFFIX)
            with self._lock(session_id):
                _write_durable(wal, json.dumps({"timestamp": time.time(), "data": data}))
                tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
                _write_durable(tmp, json.dumps(data, indent=2, ensure_ascii=False))
                os.replace(tmp, path)
                wal.unlink(missing_ok=True)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write {path}: {e}") from e

    def _replay_record_wal(self, path: Path) -> bool:
        """Finish an interrupted write. Returns True if a WAL was replayed."""
        wal = path.with_name(path.name + WAL_SUFFIX)
        if not wal.exists():
            return False
        try:
            with open(wal, encoding="utf-8") as f:
                entry = json.load(f)
            data = entry["data"]
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError):
            _quarantine(wal)
            return False
        tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        _write_durable(tmp, json.dumps(data, indent=2, ensure_ascii=False))
        os.replace(tmp, path)
        wal.unlink(missing_ok=True)
        log.info("Replayed WAL for %s", path)
        return True

    def _read_record_sync(self, session_id: str, path: Path) -> Any:
        if not self.session_dir(session_id).exists():
            return None
        try:
            if path.with_name(path.name + WAL_SUFFIX).exists():
                with self._lock(session_id):
                    self._replay_record_wal(path)
            if not path.exists():
                return None
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupted record {path}: {e}") from e
        except OSError as e:
            raise StoreError(f"Failed to read {path}: {e}") from e

    async def _save_record(self, session_id: str, name: str, data: Any) -> None:
        path = self._record_path(session_id, name)
        await self._chain(str(path), self._write_record_sync, session_id, path, data)

    async def _load_record(self, session_id: str, name: str) -> Any:
        path = self._record_path(session_id, name)
        return await self._chain(str(path), self._read_record_sync, session_id, path)

    # ------------------------------------------------------------------
    # runtime/
    # ------------------------------------------------------------------

    async def save_messages(self, session_id: str, messages: list[Message]) -> None:
        await self._save_record(session_id, "messages", [m.to_dict() for m in messages])

    async def load_messages(self, session_id: str) -> list[Message]:
        data = await self._load_record(session_id, "messages")
        return [Message.from_dict(m) for m in data or []]

    async def save_tool_call_records(self, session_id: str, records: list[ToolCallRecord]) -> None:
        await self._save_record(session_id, "tool_calls", [r.to_dict() for r in records])

    async def load_tool_call_records(self, session_id: str) -> list[ToolCallRecord]:
        data = await self._load_record(session_id, "tool_calls")
        return [ToolCallRecord.from_dict(r) for r in data or []]

    async def save_todos(self, session_id: str, snapshot: dict[str, Any]) -> None:
        await self._save_record(session_id, "todos", snapshot)

    async def load_todos(self, session_id: str) -> dict[str, Any] | None:
        return await self._load_record(session_id, "todos")

    # ------------------------------------------------------------------
    # events/
    # ------------------------------------------------------------------

    def _keyed_lock(self, locks: dict[tuple[str, str], threading.Lock], key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = locks.get(key)
            if lock is None:
                lock = threading.Lock()
                locks[key] = lock
            return lock

    def _channel_lock(self, key: tuple[str, str]) -> threading.Lock:
        return self._keyed_lock(self._event_locks, key)

    def _flush_lock(self, key: tuple[str, str]) -> threading.Lock:
        return self._keyed_lock(self._flush_locks, key)

    def _activate_channel(self, key: tuple[str, str]) -> list[dict[str, Any]]:
        """Claim a channel for this process; a WAL left behind is replayed first.

        Must be called with the channel lock held.
        """
        buffer = self._event_buffers.get(key)
        if buffer is None:
            self._replay_event_wal(*key)
            buffer = []
            self._event_buffers[key] = buffer
        return buffer

    def _replay_event_wal(self, session_id: str, channel: str) -> int:
        log_path = self._events_path(session_id, channel)
        wal = log_path.with_name(log_path.name + WAL_SUFFIX)
        if not wal.exists():
            return 0

        entries: list[dict[str, Any]] = []
        damaged = False
        with open(wal, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    damaged = True

        # The crash may have happened after the log append but before the WAL delete
        existing = {int(r["cursor"]) for r in self._read_log(log_path)}
        fresh = [e for e in entries if int(e["cursor"]) not in existing]
        if fresh:
            with open(log_path, "a", encoding="utf-8") as f:
                for entry in fresh:
                    f.write(json.dumps(entry, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
        if damaged:
            _quarantine(wal)
        else:
            wal.unlink(missing_ok=True)
        log.info("Replayed %d event(s) from %s", len(fresh), wal)
        return len(fresh)

    @staticmethod
    def _read_log(path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        records: list[dict[str, Any]] = []
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    log.warning("Skipping unreadable event line in %s", path)
        return records

    async def append_event(self, session_id: str, record: dict[str, Any]) -> None:
        channel = record["channel"]
        key = (session_id, channel)
        log_path = self._events_path(session_id, channel)
        try:
            line = json.dumps(record, ensure_ascii=False) + "\n"
            with self._channel_lock(key):
                log_path.parent.mkdir(parents=True, exist_ok=True)
                buffer = self._activate_channel(key)
                with open(log_path.with_name(log_path.name + WAL_SUFFIX), "a", encoding="utf-8") as f:
                    f.write(line)
                buffer.append(record)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to buffer event for {session_id}/{channel}: {e}") from e
        self._schedule_flush(key)

    def _schedule_flush(self, key: tuple[str, str]) -> None:
        if key in self._flush_handles:
            return
        loop = asyncio.get_running_loop()
        self._flush_handles[key] = loop.call_later(self._flush_interval, self._start_flush, key)

    def _start_flush(self, key: tuple[str, str]) -> None:
        self._flush_handles.pop(key, None)
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(self._flush_channel_sync, key))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task[None]) -> None:
        self._flush_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Event flush failed: %s", task.exception())

    def _flush_channel_sync(self, key: tuple[str, str]) -> None:
        session_id, channel = key
        log_path = self._events_path(session_id, channel)
        wal = log_path.with_name(log_path.name + WAL_SUFFIX)
        channel_lock = self._channel_lock(key)
        with self._flush_lock(key):
            with channel_lock:
                buffer = self._event_buffers.get(key)
                if not buffer:
                    return
                batch = list(buffer)
            # append_event keeps buffering while the batch is written
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(log_path, "a", encoding="utf-8") as f:
                    for record in batch:
                        f.write(json.dumps(record, ensure_ascii=False) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise StoreError(f"Failed to flush events for {session_id}/{channel}: {e}") from e
            with channel_lock:
                del buffer[: len(batch)]
                # Flushed entries left in the WAL are dropped by cursor on replay
                if not buffer:
                    wal.unlink(missing_ok=True)

    async def flush_events(self, session_id: str | None = None) -> None:
        keys = [k for k in self._event_buffers if session_id is None or k[0] == session_id]
        for key in keys:
            handle = self._flush_handles.pop(key, None)
            if handle is not None:
                handle.cancel()
        for key in keys:
            await asyncio.to_thread(self._flush_channel_sync, key)
        pending = [t for t in self._flush_tasks if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _read_events_sync(
        self, session_id: str, channels: list[str], since: int | None
    ) -> list[dict[str, Any]]:
        sources: list[list[dict[str, Any]]] = []
        for channel in channels:
            key = (session_id, channel)
            with self._channel_lock(key):
                if key not in self._event_buffers:
                    self._replay_event_wal(session_id, channel)
                buffered = list(self._event_buffers.get(key, []))
            # Read after copying the buffer: a record a flush moves meanwhile is in the log
            sources.append(self._read_log(self._events_path(session_id, channel)))
            sources.append(buffered)
        return merge_event_records(*sources, since=since)

    async def read_events(
        self,
        session_id: str,
        *,
        channel: str | None = None,
        since: int | None = None,
    ) -> list[dict[str, Any]]:
        if not self.session_dir(session_id).exists():
            return []
        channels = [channel] if channel else list(ALL_CHANNELS)
        try:
            return await asyncio.to_thread(self._read_events_sync, session_id, channels, since)
        except OSError as e:
            raise StoreError(f"Failed to read events for {session_id}: {e}") from e

    # ------------------------------------------------------------------
    # history/
    # ------------------------------------------------------------------

    async def _append_history(self, session_id: str, kind: str, record: dict[str, Any]) -> None:
        stamp = f"{time.time_ns():020d}-{uuid.uuid4().hex[:6]}"
        path = self.session_dir(session_id) / "history" / kind / f"{stamp}.json"
        await self._chain(str(path), self._write_record_sync, session_id, path, record)

    def _load_history_sync(self, session_id: str, kind: str) -> list[dict[str, Any]]:
        folder = self.session_dir(session_id) / "history" / kind
        if not folder.exists():
            return []
        names = sorted(
            {p.name.removesuffix(WAL_SUFFIX) for p in folder.iterdir() if p.name.endswith((".json", ".json.wal"))}
        )
        return [self._read_record_sync(session_id, folder / name) for name in names]

    async def save_history_window(self, session_id: str, window: dict[str, Any]) -> None:
        await self._append_history(session_id, "windows", window)

    async def load_history_windows(self, session_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._load_history_sync, session_id, "windows")

    async def save_compression_record(self, session_id: str, record: dict[str, Any]) -> None:
        await self._append_history(session_id, "compressions", record)

    async def load_compression_records(self, session_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._load_history_sync, session_id, "compressions")

    async def save_recovered_file(self, session_id: str, record: dict[str, Any]) -> None:
        await self._append_history(session_id, "recovered", record)

    async def load_recovered_files(self, session_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._load_history_sync, session_id, "recovered")

    # ------------------------------------------------------------------
    # snapshots/
    # ------------------------------------------------------------------

    def _snapshot_path(self, session_id: str, snapshot_id: str) -> Path:
        return self.session_dir(session_id) / "snapshots" / f"{quote(snapshot_id, safe='')}.json"

    async def save_snapshot(self, session_id: str, snapshot: Snapshot) -> None:
        path = self._snapshot_path(session_id, snapshot.id)
        await self._chain(str(path), self._write_record_sync, session_id, path, snapshot.to_dict())

    async def load_snapshot(self, session_id: str, snapshot_id: str) -> Snapshot | None:
        path = self._snapshot_path(session_id, snapshot_id)
        data = await self._chain(str(path), self._read_record_sync, session_id, path)
        return Snapshot.from_dict(data) if data else None

    def _list_snapshots_sync(self, session_id: str) -> list[Snapshot]:
        folder = self.session_dir(session_id) / "snapshots"
        if not folder.exists():
            return []
        names = sorted(
            {p.name.removesuffix(WAL_SUFFIX) for p in folder.iterdir() if p.name.endswith((".json", ".json.wal"))}
        )
        snapshots = []
        for name in names:
            data = self._read_record_sync(session_id, folder / name)
            if data:
                snapshots.append(Snapshot.from_dict(data))
        return sorted(snapshots, key=lambda s: s.created_at)

    async def list_snapshots(self, session_id: str) -> list[Snapshot]:
        return await asyncio.to_thread(self._list_snapshots_sync, session_id)

    # ------------------------------------------------------------------
    # meta
    # ------------------------------------------------------------------

    async def save_meta(self, session_id: str, info: SessionInfo) -> None:
        await self._save_record(session_id, "meta", info.to_dict())

    async def load_meta(self, session_id: str) -> SessionInfo | None:
        data = await self._load_record(session_id, "meta")
        return SessionInfo.from_dict(data) if data else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def exists(self, session_id: str) -> bool:
        return self.session_dir(session_id).is_dir()

    async def delete(self, session_id: str) -> None:
        for key in [k for k in self._event_buffers if k[0] == session_id]:
            handle = self._flush_handles.pop(key, None)
            if handle is not None:
                handle.cancel()
        pending = [t for t in self._flush_tasks if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for key in [k for k in self._event_buffers if k[0] == session_id]:
            with self._channel_lock(key):
                self._event_buffers.pop(key, None)
        session_dir = self.session_dir(session_id)
        try:
            await asyncio.to_thread(shutil.rmtree, session_dir, True)
        except OSError as e:
            raise StoreError(f"Failed to delete {session_id}: {e}") from e
        log.debug("Deleted session %s", session_id)

    async def list(self, prefix: str | None = None) -> list[str]:
        if not self._base.exists():
            return []
        ids = sorted(unquote(p.name) for p in self._base.iterdir() if p.is_dir())
        return [i for i in ids if i.startswith(prefix)] if prefix else ids

    def _recover_sync(self) -> int:
        """Replay every outstanding WAL in every session. Returns the count."""
        replayed = 0
        if not self._base.exists():
            return 0
        for session_dir in self._base.iterdir():
            if not session_dir.is_dir():
                continue
            session_id = unquote(session_dir.name)
            # Record writes hold the session lock from temp file to rename
            with self._lock(session_id):
                for tmp in session_dir.rglob("*.tmp"):
                    tmp.unlink(missing_ok=True)
            for wal in sorted(session_dir.rglob(f"*{WAL_SUFFIX}")):
                if wal.parent.name == "events":
                    channel = wal.name.removesuffix(f".log{WAL_SUFFIX}")
                    key = (session_id, channel)
                    with self._channel_lock(key):
                        if key in self._event_buffers:
                            continue
                        if self._replay_event_wal(session_id, channel):
                            replayed += 1
                else:
                    record = wal.with_name(wal.name.removesuffix(WAL_SUFFIX))
                    with self._lock(session_id):
                        if self._replay_record_wal(record):
                            replayed += 1
        if replayed:
            log.info("Startup sweep replayed %d WAL file(s)", replayed)
        return replayed

    async def recover(self) -> int:
        """Run the WAL sweep now (waits for the startup sweep if still running)."""
        if self._sweep_task is not None and not self._sweep_task.done():
            await self._sweep_task
        return await asyncio.to_thread(self._recover_sync)

    async def close(self) -> None:
        await self.flush_events()
        if self._sweep_task is not None and not self._sweep_task.done():
            await self._sweep_task
