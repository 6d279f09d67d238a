"""Configuration schema dataclasses for turnloop.

All fields have defaults so that partial configs merge together cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMConfig:
    """Model provider configuration."""

    model: str = "claude-sonnet-4-20250514"
    api_base: str | None = None  # Custom endpoint
    api_key_env: str | None = None  # Secret name looked up via fetch_secret()
    max_tokens: int = 4096
    temperature: float = 0.7


@dataclass
class PermissionConfig:
    """Static tool permission policy.

    Example config.yaml:
        permission:
          mode: readonly
          deny_tools: ["bash_run"]
          require_approval_tools: ["fs_write"]
    """

    mode: str = "auto"  # auto | approval | readonly | <custom>
    allow_tools: list[str] | None = None  # None = no allow-list
    deny_tools: list[str] = field(default_factory=list)
    require_approval_tools: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "allow_tools": list(self.allow_tools) if self.allow_tools is not None else None,
            "deny_tools": list(self.deny_tools),
            "require_approval_tools": list(self.require_approval_tools),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PermissionConfig:
        data = data or {}
        allow = data.get("allow_tools")
        return cls(
            mode=data.get("mode") or "auto",
            allow_tools=list(allow) if allow is not None else None,
            deny_tools=list(data.get("deny_tools") or []),
            require_approval_tools=list(data.get("require_approval_tools") or []),
        )


@dataclass
class SessionConfig:
    """Session engine defaults."""

    system: str | None = None  # System prompt
    max_concurrency: int = 3  # Parallel tool executions per turn
    stream: bool = False  # Use provider streaming when available


@dataclass
class StoreConfig:
    """Durable store configuration."""

    base_dir: str = ".turnloop/sessions"
    event_flush_interval: float = 0.05  # Seconds events stay buffered
    sweep_on_start: bool = True  # Replay leftover WAL files at startup


@dataclass
class EventsConfig:
    memory_cap: int = 10_000  # In-memory timeline entries per session


@dataclass
class PoolConfig:
    max_sessions: int = 50


@dataclass
class SandboxConfig:
    """Local sandbox configuration."""

    work_dir: str | None = None  # Default: process cwd
    enforce_boundary: bool = True
    allow_paths: list[str] = field(default_factory=list)
    exec_timeout_ms: int = 120_000
    watch_poll_interval: float = 1.0


@dataclass
class SchedulerConfig:
    drift_tolerance_ms: int = 5_000


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, wins over level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    permission: PermissionConfig = field(default_factory=PermissionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Unknown top-level sections are kept for extensions
    extra: dict[str, Any] = field(default_factory=dict)
