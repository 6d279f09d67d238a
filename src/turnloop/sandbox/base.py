"""Sandbox interfaces: filesystem and command execution for tools."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class ExecResult:
    code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.code == 0

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "stdout": self.stdout, "stderr": self.stderr}


@dataclass(frozen=True, slots=True)
class FileStat:
    mtime: float
    size: int
    is_dir: bool


@runtime_checkable
class SandboxFS(Protocol):
    def resolve(self, path: str) -> str: ...

    def is_inside(self, path: str) -> bool: ...

    async def read(self, path: str) -> str: ...

    async def write(self, path: str, content: str) -> None: ...

    async def stat(self, path: str) -> FileStat: ...

    async def glob(self, pattern: str, *, cwd: str | None = None, absolute: bool = False) -> list[str]: ...

    def temp(self, name: str | None = None) -> str: ...


@runtime_checkable
class Sandbox(Protocol):
    """What the engine and tools need from an execution environment.

    `watch_files`/`unwatch_files` and `dispose` are optional; the engine
    checks for them with getattr.
    """

    kind: str
    work_dir: str
    fs: SandboxFS

    async def exec(self, cmd: str, *, timeout_ms: int | None = None) -> ExecResult: ...


FileChangeListener = Callable[[dict[str, Any]], Any]
