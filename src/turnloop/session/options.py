"""Per-session engine options."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from turnloop.config.schema import PermissionConfig
from turnloop.events.bus import DEFAULT_MEMORY_CAP

if TYPE_CHECKING:
    from turnloop.config.schema import Config


@dataclass
class SessionOptions:
    """Model parameters, tool concurrency and permission policy of a session.

    Stored in the session meta record so that a resumed session runs with
    the options it was created with.
    """

    system: str | None = None
    max_tokens: int = 4096
    temperature: float | None = 0.7
    max_concurrency: int = 3
    stream: bool = False
    memory_cap: int = DEFAULT_MEMORY_CAP
    permission: PermissionConfig = field(default_factory=PermissionConfig)

    @classmethod
    def from_config(cls, config: Config) -> SessionOptions:
        return cls(
            system=config.session.system,
            max_tokens=config.llm.max_tokens,
            temperature=config.llm.temperature,
            max_concurrency=config.session.max_concurrency,
            stream=config.session.stream,
            memory_cap=config.events.memory_cap,
            permission=PermissionConfig.from_dict(config.permission.to_dict()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "system": self.system,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "max_concurrency": self.max_concurrency,
            "stream": self.stream,
            "memory_cap": self.memory_cap,
            "permission": self.permission.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionOptions:
        defaults = cls()
        return cls(
            system=data.get("system"),
            max_tokens=int(data.get("max_tokens", defaults.max_tokens)),
            temperature=data.get("temperature", defaults.temperature),
            max_concurrency=int(data.get("max_concurrency", defaults.max_concurrency)),
            stream=bool(data.get("stream", False)),
            memory_cap=int(data.get("memory_cap", defaults.memory_cap)),
            permission=PermissionConfig.from_dict(data.get("permission")),
        )
