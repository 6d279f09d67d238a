"""Polling file watcher used by LocalSandbox.watch_files.

Polling rather than native notifications keeps behaviour identical across
platforms. One watcher serves every watch registered on a sandbox; the poll
task runs only while at least one watch exists.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from turnloop.logging import get_logger

log = get_logger("sandbox.watcher")


@dataclass
class WatchedFile:
    path: Path
    mtime: float | None = None
    size: int | None = None
    exists: bool = True


@dataclass
class FileChangeEvent:
    """A detected change to one watched path."""

    path: Path
    change_type: str  # "modified", "created", "deleted"
    old_mtime: float | None
    new_mtime: float | None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "change_type": self.change_type,
            "old_mtime": self.old_mtime,
            "new_mtime": self.new_mtime,
            "timestamp": self.timestamp,
        }


Listener = Callable[[FileChangeEvent], Any]


def _snapshot(path: Path) -> WatchedFile:
    try:
        stat = path.stat()
    except FileNotFoundError:
        return WatchedFile(path=path, exists=False)
    return WatchedFile(path=path, mtime=stat.st_mtime, size=stat.st_size)


class FileWatcher:
    """Poll a set of files and report creations, modifications and deletions.

    Example:
        watcher = FileWatcher(poll_interval=0.5)
        watcher.add("w1", [Path("/project/main.py")], print)
        ...
        watcher.remove("w1")
    """

    def __init__(self, poll_interval: float = 1.0) -> None:
        self._poll_interval = max(0.01, poll_interval)
        self._files: dict[Path, WatchedFile] = {}
        # watch id -> (paths, listener)
        self._watches: dict[str, tuple[list[Path], Listener]] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def watched_count(self) -> int:
        return len(self._files)

    def add(self, watch_id: str, paths: list[Path], listener: Listener) -> None:
        self._watches[watch_id] = (list(paths), listener)
        for path in paths:
            if path not in self._files:
                self._files[path] = _snapshot(path)
        log.debug("Watch %s on %d path(s)", watch_id, len(paths))
        self._ensure_running()

    def remove(self, watch_id: str) -> bool:
        entry = self._watches.pop(watch_id, None)
        if entry is None:
            return False
        still_watched = {p for paths, _ in self._watches.values() for p in paths}
        for path in entry[0]:
            if path not in still_watched:
                self._files.pop(path, None)
        if not self._watches:
            self.stop()
        return True

    def check_changes(self) -> list[FileChangeEvent]:
        """Poll every watched file once."""
        changes = []
        for path, watched in list(self._files.items()):
            change = self._check_file(path, watched)
            if change is not None:
                changes.append(change)
        return changes

    def _check_file(self, path: Path, watched: WatchedFile) -> FileChangeEvent | None:
        try:
            stat = path.stat()
        except FileNotFoundError:
            if not watched.exists:
                return None
            old = watched.mtime
            watched.exists, watched.mtime, watched.size = False, None, None
            return FileChangeEvent(path, "deleted", old, None)
        except OSError as e:
            log.warning("Error checking %s: %s", path, e)
            return None

        if not watched.exists:
            watched.exists, watched.mtime, watched.size = True, stat.st_mtime, stat.st_size
            return FileChangeEvent(path, "created", None, stat.st_mtime)
        if stat.st_mtime != watched.mtime or stat.st_size != watched.size:
            old = watched.mtime
            watched.mtime, watched.size = stat.st_mtime, stat.st_size
            return FileChangeEvent(path, "modified", old, stat.st_mtime)
        return None

    def _dispatch(self, change: FileChangeEvent) -> None:
        for watch_id, (paths, listener) in list(self._watches.items()):
            if change.path not in paths:
                continue
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                log.error("Error in file change listener %s: %s", watch_id, e)

    def _ensure_running(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("No running event loop; file watch will only poll on check_changes()")
            return
        self._task = loop.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        log.info("File watcher started (interval: %.2fs)", self._poll_interval)
        try:
            while self._watches:
                for change in self.check_changes():
                    self._dispatch(change)
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            log.debug("File watcher cancelled")
            raise

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def close(self) -> None:
        self._watches.clear()
        self._files.clear()
        self.stop()
