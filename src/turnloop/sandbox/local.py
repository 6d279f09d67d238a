"""Local filesystem and subprocess sandbox."""

from __future__ import annotations

import asyncio
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from turnloop.errors import SandboxError
from turnloop.logging import get_logger
from turnloop.sandbox.base import ExecResult, FileStat
from turnloop.sandbox.watcher import FileChangeEvent, FileWatcher, Listener

log = get_logger("sandbox")

DEFAULT_TIMEOUT_MS = 120_000
OUTPUT_LIMIT = 10 * 1024 * 1024
TIMEOUT_EXIT_CODE = 124

# Destructive or privilege-escalating commands, refused before execution
DANGEROUS_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"rm\s+-rf\s+/($|\s)",
        r"sudo\s+",
        r"shutdown",
        r"reboot",
        r"mkfs\.",
        r"dd\s+.*of=",
        r":\(\)\{\s*:\|:&\s*\};:",
        r"chmod\s+777\s+/",
        r"curl\s+.*\|\s*(bash|sh)",
        r"wget\s+.*\|\s*(bash|sh)",
        r">\s*/dev/sda",
        r"mkswap",
        r"swapon",
    )
)


def check_command(cmd: str) -> str | None:
    """Reason a command is refused, or None if it may run."""
    for pattern in DANGEROUS_PATTERNS:
        if pattern.search(cmd):
            return f"Dangerous command blocked for security: {cmd[:100]}"
    return None


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    text = data.decode("utf-8", errors="replace")
    if len(text) > OUTPUT_LIMIT:
        text = text[:OUTPUT_LIMIT] + "\n... (output truncated)"
    return text


async def run_shell(cmd: str, cwd: str, timeout_ms: int) -> ExecResult:
    """Run `cmd` through the shell and collect its output."""
    blocked = check_command(cmd)
    if blocked:
        log.warning("%s", blocked)
        return ExecResult(code=1, stdout="", stderr=blocked)

    try:
        process = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as e:
        return ExecResult(code=1, stdout="", stderr=f"OS error: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass  # Already gone
        return ExecResult(
            code=TIMEOUT_EXIT_CODE,
            stdout="",
            stderr=f"Command timed out after {timeout_ms}ms",
        )
    return ExecResult(code=process.returncode or 0, stdout=_decode(stdout), stderr=_decode(stderr))


class LocalFS:
    """Filesystem access confined to a working directory (plus allowed paths)."""

    def __init__(self, work_dir: Path, *, enforce_boundary: bool = True, allow_paths: list[Path] | None = None):
        self._work_dir = work_dir
        self._enforce_boundary = enforce_boundary
        self._allow_paths = [p.resolve() for p in allow_paths or []]

    def resolve(self, path: str) -> str:
        p = Path(path)
        if not p.is_absolute():
            p = self._work_dir / p
        return str(p.resolve())

    def is_inside(self, path: str) -> bool:
        resolved = Path(self.resolve(path))
        if resolved.is_relative_to(self._work_dir):
            return True
        if not self._enforce_boundary:
            return True
        return any(resolved.is_relative_to(allowed) for allowed in self._allow_paths)

    def _checked(self, path: str) -> Path:
        if not self.is_inside(path):
            raise SandboxError(f"Path outside sandbox: {path}")
        return Path(self.resolve(path))

    async def read(self, path: str) -> str:
        target = self._checked(path)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def write(self, path: str, content: str) -> None:
        target = self._checked(path)

        def write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await asyncio.to_thread(write)

    async def stat(self, path: str) -> FileStat:
        target = self._checked(path)
        st = await asyncio.to_thread(target.stat)
        return FileStat(mtime=st.st_mtime, size=st.st_size, is_dir=target.is_dir())

    async def glob(self, pattern: str, *, cwd: str | None = None, absolute: bool = False) -> list[str]:
        root = self._checked(cwd) if cwd else self._work_dir

        def scan() -> list[str]:
            matches = []
            for entry in sorted(root.glob(pattern)):
                rel = entry.relative_to(root)
                if any(part.startswith(".") for part in rel.parts):
                    continue
                if not self.is_inside(str(entry)):
                    continue
                matches.append(str(entry) if absolute else os.path.relpath(entry, self._work_dir))
            return matches

        return await asyncio.to_thread(scan)

    def temp(self, name: str | None = None) -> str:
        """Relative path of a scratch file under .temp/ (not created)."""
        name = name or f"temp-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"
        return os.path.join(".temp", name)


@dataclass
class BackgroundProcess:
    id: str
    cmd: str
    started_at: float = field(default_factory=time.time)
    code: int | None = None
    stdout: str = ""
    stderr: str = ""
    task: asyncio.Task[ExecResult] | None = None

    @property
    def running(self) -> bool:
        return self.code is None

    def to_dict(self) -> dict[str, Any]:
        output = "\n".join(s for s in (self.stdout, self.stderr) if s).strip()
        return {
            "shell_id": self.id,
            "cmd": self.cmd,
            "running": self.running,
            "status": "running" if self.running else f"completed (exit code {self.code})",
            "code": self.code,
            "output": output or "(no output yet)",
        }


class ProcessTable:
    """Background commands owned by one sandbox."""

    def __init__(self, cwd: str) -> None:
        self._cwd = cwd
        self._processes: dict[str, BackgroundProcess] = {}

    def start(self, cmd: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> str:
        shell_id = f"shell-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"
        proc = BackgroundProcess(id=shell_id, cmd=cmd)
        proc.task = asyncio.get_running_loop().create_task(run_shell(cmd, self._cwd, timeout_ms))
        proc.task.add_done_callback(lambda t: self._finished(proc, t))
        self._processes[shell_id] = proc
        log.debug("Started background shell %s: %s", shell_id, cmd[:80])
        return shell_id

    @staticmethod
    def _finished(proc: BackgroundProcess, task: asyncio.Task[ExecResult]) -> None:
        if task.cancelled():
            proc.code = -1
            proc.stderr = proc.stderr or "Killed"
            return
        exc = task.exception()
        if exc is not None:
            proc.code = -1
            proc.stderr = str(exc)
            return
        result = task.result()
        proc.code, proc.stdout, proc.stderr = result.code, result.stdout, result.stderr

    def get(self, shell_id: str) -> BackgroundProcess:
        proc = self._processes.get(shell_id)
        if proc is None:
            raise SandboxError(f"Shell not found: {shell_id}")
        return proc

    def logs(self, shell_id: str) -> dict[str, Any]:
        return self.get(shell_id).to_dict()

    def kill(self, shell_id: str) -> bool:
        proc = self._processes.pop(shell_id, None)
        if proc is None:
            raise SandboxError(f"Shell not found: {shell_id}")
        if proc.task is not None and not proc.task.done():
            proc.task.cancel()
            return True
        return False

    def list(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in self._processes.values()]

    async def wait(self, shell_id: str) -> dict[str, Any]:
        proc = self.get(shell_id)
        if proc.task is not None:
            await asyncio.gather(proc.task, return_exceptions=True)
        return proc.to_dict()

    def dispose(self) -> None:
        for proc in self._processes.values():
            if proc.task is not None and not proc.task.done():
                proc.task.cancel()
        self._processes.clear()


class LocalSandbox:
    """Sandbox on the local machine.

    Args:
        work_dir: Root of the sandbox (default: process cwd).
        enforce_boundary: Refuse paths outside work_dir and allow_paths.
        allow_paths: Extra directories reachable when the boundary is enforced.
        exec_timeout_ms: Default command timeout.
        watch_poll_interval: Seconds between file watch polls.
    """

    kind = "local"

    def __init__(
        self,
        work_dir: str | Path | None = None,
        *,
        enforce_boundary: bool = True,
        allow_paths: list[str] | None = None,
        exec_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        watch_poll_interval: float = 1.0,
    ) -> None:
        self.work_dir = str(Path(work_dir or os.getcwd()).resolve())
        self.fs = LocalFS(
            Path(self.work_dir),
            enforce_boundary=enforce_boundary,
            allow_paths=[Path(p) for p in allow_paths or []],
        )
        self.processes = ProcessTable(self.work_dir)
        self._exec_timeout_ms = exec_timeout_ms
        self._watcher = FileWatcher(poll_interval=watch_poll_interval)

    @classmethod
    def from_config(cls, config: Any) -> LocalSandbox:
        """Build from a SandboxConfig."""
        return cls(
            config.work_dir,
            enforce_boundary=config.enforce_boundary,
            allow_paths=list(config.allow_paths),
            exec_timeout_ms=config.exec_timeout_ms,
            watch_poll_interval=config.watch_poll_interval,
        )

    async def exec(self, cmd: str, *, timeout_ms: int | None = None) -> ExecResult:
        return await run_shell(cmd, self.work_dir, timeout_ms or self._exec_timeout_ms)

    def start_background(self, cmd: str, *, timeout_ms: int | None = None) -> str:
        blocked = check_command(cmd)
        if blocked:
            raise SandboxError(blocked)
        return self.processes.start(cmd, timeout_ms=timeout_ms or self._exec_timeout_ms)

    def watch_files(self, paths: list[str], listener: Listener) -> str:
        """Poll `paths` and call `listener(FileChangeEvent)` on changes.

        Paths outside the sandbox are skipped. Returns the watch id.
        """
        watch_id = f"watch-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"
        resolved = []
        for path in paths:
            if self.fs.is_inside(path):
                resolved.append(Path(self.fs.resolve(path)))
            else:
                log.warning("Not watching %s: outside sandbox", path)
        self._watcher.add(watch_id, resolved, listener)
        return watch_id

    def unwatch_files(self, watch_id: str) -> None:
        self._watcher.remove(watch_id)

    def poll_watches(self) -> list[FileChangeEvent]:
        """Poll once and dispatch; useful without a running poll task."""
        changes = self._watcher.check_changes()
        for change in changes:
            self._watcher._dispatch(change)
        return changes

    async def dispose(self) -> None:
        self._watcher.close()
        self.processes.dispose()
