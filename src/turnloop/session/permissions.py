"""Static tool permission policy.

PermissionEvaluator maps a tool name to "allow", "deny" or "ask" using, in
order: the deny-list, the allow-list (a tool missing from a non-empty
allow-list is denied), the require-approval list, then the handler of the
configured permission mode. Modes live in a PermissionModeRegistry; the
built-in ones are:

    auto      always allow
    approval  always ask
    readonly  allow tools whose metadata says they do not mutate, deny tools
              that do, ask otherwise
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from turnloop.config.schema import PermissionConfig
    from turnloop.tools.base import ToolDescriptor

_log = logging.getLogger("turnloop.session.permissions")

PermissionDecision = Literal["allow", "deny", "ask"]

MUTATING_ACCESS = frozenset({"write", "execute", "manage", "mutate"})


@dataclass(frozen=True, slots=True)
class PermissionContext:
    """What a mode handler gets to look at."""

    tool_name: str
    descriptor: ToolDescriptor | None
    config: PermissionConfig


PermissionModeHandler = Callable[[PermissionContext], PermissionDecision]


def _auto_mode(ctx: PermissionContext) -> PermissionDecision:
    return "allow"


def _approval_mode(ctx: PermissionContext) -> PermissionDecision:
    return "ask"


def _readonly_mode(ctx: PermissionContext) -> PermissionDecision:
    metadata: Mapping[str, Any] = ctx.descriptor.metadata if ctx.descriptor else {}
    mutates = metadata.get("mutates")
    if mutates is True:
        return "deny"
    if mutates is False:
        return "allow"
    access = metadata.get("access")
    if isinstance(access, str) and access.lower() in MUTATING_ACCESS:
        return "deny"
    return "ask"


class PermissionModeRegistry:
    """Named permission modes, built-in and custom."""

    def __init__(self) -> None:
        self._handlers: dict[str, PermissionModeHandler] = {}
        self._custom: set[str] = set()
        self.register("auto", _auto_mode, built_in=True)
        self.register("approval", _approval_mode, built_in=True)
        self.register("readonly", _readonly_mode, built_in=True)

    def register(self, mode: str, handler: PermissionModeHandler, *, built_in: bool = False) -> None:
        self._handlers[mode] = handler
        if built_in:
            self._custom.discard(mode)
        else:
            self._custom.add(mode)
        _log.debug("Registered permission mode %s%s", mode, "" if built_in else " (custom)")

    def unregister(self, mode: str) -> None:
        self._handlers.pop(mode, None)
        self._custom.discard(mode)

    def get(self, mode: str) -> PermissionModeHandler | None:
        return self._handlers.get(mode)

    def list(self) -> list[str]:
        return list(self._handlers)

    def serialize(self) -> list[dict[str, Any]]:
        """Mode names with a built_in flag, for the session meta record.

        Built-in modes come back on their own at resume; custom ones must be
        registered again by the host before resuming.
        """
        return [{"name": name, "built_in": name not in self._custom} for name in self._handlers]

    def validate_restore(self, serialized: list[dict[str, Any]]) -> list[str]:
        """Names of serialized custom modes that are not registered here."""
        return [
            entry["name"]
            for entry in serialized
            if not entry.get("built_in", False) and entry.get("name") not in self._handlers
        ]


# Process-wide default; sessions may be given their own registry
permission_modes = PermissionModeRegistry()


class PermissionEvaluator:
    """Evaluate the static policy for one session.

    Args:
        config: The session's permission policy.
        descriptors: Tool name to descriptor lookup, consulted by mode handlers.
        registry: Mode registry (defaults to the process-wide one).
    """

    def __init__(
        self,
        config: PermissionConfig,
        descriptors: Mapping[str, ToolDescriptor] | None = None,
        registry: PermissionModeRegistry | None = None,
    ) -> None:
        self.config = config
        self._descriptors = descriptors if descriptors is not None else {}
        self.registry = registry or permission_modes

    def evaluate(self, tool_name: str) -> PermissionDecision:
        config = self.config
        if tool_name in config.deny_tools:
            return "deny"
        if config.allow_tools and tool_name not in config.allow_tools:
            return "deny"
        if tool_name in config.require_approval_tools:
            return "ask"

        handler = self.registry.get(config.mode or "auto")
        if handler is None:
            _log.warning("Unknown permission mode %r, falling back to auto", config.mode)
            handler = self.registry.get("auto")
        if handler is None:
            return "allow"

        ctx = PermissionContext(
            tool_name=tool_name,
            descriptor=self._descriptors.get(tool_name),
            config=config,
        )
        return handler(ctx)
