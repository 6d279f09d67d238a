"""Hook pipeline around tool and model calls.

A hook set is any object (or dict) supplying some of:

    pre_tool_use(call, ctx)    -> Allow | Deny | Ask | Result | None
    post_tool_use(outcome, ctx) -> Update | Replace | None
    pre_model(request)
    post_model(response)
    messages_changed(snapshot)

Hook sets run in registration order. The first pre_tool_use hook to return
a decision wins and the rest are skipped. Every post_tool_use hook runs and
each one sees the outcome left by the previous one. Hooks may be plain
functions or coroutines.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Union

if TYPE_CHECKING:
    from turnloop.core.types import ToolCall, ToolOutcome
    from turnloop.tools.base import ToolContext

_log = logging.getLogger("turnloop.session.hooks")

HOOK_NAMES = ("pre_tool_use", "post_tool_use", "pre_model", "post_model", "messages_changed")

HookOrigin = Literal["session", "tool"]


# ----------------------------------------------------------------------
# Decisions
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Allow:
    """Run the tool without consulting later hooks."""


@dataclass(frozen=True, slots=True)
class Deny:
    """Do not run the tool; record an error result instead.

    Attributes:
        reason: Shown in the default error result
        tool_result: Replaces the default error content when given
    """

    reason: str | None = None
    tool_result: Any = None


@dataclass(frozen=True, slots=True)
class Ask:
    """Pause the call until decide() is called for it."""

    meta: Any = None


@dataclass(frozen=True, slots=True)
class Result:
    """Skip execution and use `value` as the tool result."""

    value: Any = None


HookDecision = Union[Allow, Deny, Ask, Result]


@dataclass(frozen=True, slots=True)
class Update:
    """Shallow-merge `fields` into the outcome."""

    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Replace:
    outcome: ToolOutcome


PostHookResult = Union[Update, Replace]


@dataclass
class Hooks:
    """Convenience container for a hook set."""

    pre_tool_use: Callable[..., Any] | None = None
    post_tool_use: Callable[..., Any] | None = None
    pre_model: Callable[..., Any] | None = None
    post_model: Callable[..., Any] | None = None
    messages_changed: Callable[..., Any] | None = None


@dataclass(frozen=True, slots=True)
class RegisteredHook:
    origin: HookOrigin
    names: tuple[str, ...]


def _lookup(hooks: Any, name: str) -> Callable[..., Any] | None:
    if isinstance(hooks, dict):
        return hooks.get(name)
    return getattr(hooks, name, None)


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class HookManager:
    """Ordered registry of hook sets."""

    def __init__(self) -> None:
        self._entries: list[tuple[Any, HookOrigin]] = []

    def register(self, hooks: Hooks | dict[str, Any] | Any, origin: HookOrigin = "session") -> None:
        self._entries.append((hooks, origin))

    def unregister(self, hooks: Any) -> bool:
        for index, (registered, _) in enumerate(self._entries):
            if registered is hooks:
                del self._entries[index]
                return True
        return False

    def registered(self) -> list[RegisteredHook]:
        return [
            RegisteredHook(
                origin=origin,
                names=tuple(name for name in HOOK_NAMES if _lookup(hooks, name) is not None),
            )
            for hooks, origin in self._entries
        ]

    def _each(self, name: str) -> list[Callable[..., Any]]:
        fns = []
        for hooks, _ in self._entries:
            fn = _lookup(hooks, name)
            if fn is not None:
                fns.append(fn)
        return fns

    async def run_pre_tool_use(self, call: ToolCall, ctx: ToolContext) -> HookDecision | None:
        """First non-None decision, or None when every hook passed."""
        for fn in self._each("pre_tool_use"):
            decision = await _call(fn, call, ctx)
            if decision is None:
                continue
            if not isinstance(decision, (Allow, Deny, Ask, Result)):
                raise TypeError(f"pre_tool_use hook returned {type(decision).__name__}, expected a decision")
            _log.debug("pre_tool_use decided %s for %s", type(decision).__name__, call.name)
            return decision
        return None

    async def run_post_tool_use(self, outcome: ToolOutcome, ctx: ToolContext) -> ToolOutcome:
        current = outcome
        for fn in self._each("post_tool_use"):
            result = await _call(fn, current, ctx)
            if isinstance(result, Replace):
                current = result.outcome
            elif isinstance(result, Update):
                current = dataclasses.replace(current, **result.fields)
        return current

    async def run_pre_model(self, request: dict[str, Any]) -> None:
        for fn in self._each("pre_model"):
            await _call(fn, request)

    async def run_post_model(self, response: Any) -> None:
        for fn in self._each("post_model"):
            await _call(fn, response)

    async def run_messages_changed(self, snapshot: dict[str, Any]) -> None:
        for fn in self._each("messages_changed"):
            await _call(fn, snapshot)

    def __len__(self) -> int:
        return len(self._entries)

    def hook_sets(self, origin: HookOrigin | None = None) -> list[Any]:
        """Registered hook sets, optionally only those of one origin."""
        return [hooks for hooks, o in self._entries if origin is None or o == origin]
