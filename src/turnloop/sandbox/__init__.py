"""Execution environments for tools."""

from turnloop.sandbox.base import ExecResult, FileStat, Sandbox, SandboxFS
from turnloop.sandbox.local import DANGEROUS_PATTERNS, LocalFS, LocalSandbox, ProcessTable, check_command
from turnloop.sandbox.watcher import FileChangeEvent, FileWatcher

__all__ = [
    "DANGEROUS_PATTERNS",
    "ExecResult",
    "FileChangeEvent",
    "FileStat",
    "FileWatcher",
    "LocalFS",
    "LocalSandbox",
    "ProcessTable",
    "Sandbox",
    "SandboxFS",
    "check_command",
]
