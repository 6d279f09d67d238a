"""Tool protocol and helpers for defining tools from plain functions.

Example:
    @tool(description="List files in a directory", readonly=True)
    async def ls(path: str = ".", *, ctx: ToolContext) -> list[str]:
        return await ctx.sandbox.fs.glob(f"{path}/*")

    session.register_tools([ls])
"""

from __future__ import annotations

import inspect
import types
import typing
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from turnloop.events.types import Event
    from turnloop.sandbox.base import Sandbox


@dataclass(frozen=True)
class ToolContext:
    """What a running tool may touch.

    Attributes:
        session_id: Id of the calling session
        sandbox: Filesystem and process access
        emit: Emit a monitor-channel `custom` event tagged with this tool
        delegate: Run a one-off sub-task on a child session and get its reply
    """

    session_id: str
    sandbox: Sandbox
    emit: Callable[..., Event]
    delegate: Callable[[str], Awaitable[str]]
    call_id: str | None = None


@runtime_checkable
class Tool(Protocol):
    """A callable tool.

    Optional attributes: `hooks` (a hook set registered with origin
    "tool"), `metadata` (read by permission modes, e.g. {"mutates": False})
    and `permission_details(call, ctx)` (extra context for permission_ask).
    """

    name: str
    description: str
    input_schema: dict[str, Any]

    async def exec(self, args: dict[str, Any], ctx: ToolContext) -> Any: ...


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """Static description of a registered tool."""

    name: str
    description: str
    input_schema: dict[str, Any]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, tool: Tool) -> ToolDescriptor:
        return cls(
            name=tool.name,
            description=tool.description,
            input_schema=tool.input_schema,
            metadata=dict(getattr(tool, "metadata", None) or {}),
        )

    def schema(self) -> dict[str, Any]:
        """Shape sent to the model provider."""
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


_JSON_TYPES: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    dict: "object",
}


def _json_type(annotation: Any) -> dict[str, Any]:
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if len(args) == 1 else {}
    if origin is typing.Literal:
        values = list(typing.get_args(annotation))
        return {"enum": values}
    base = origin or annotation
    json_type = _JSON_TYPES.get(base)
    if json_type is None:
        return {}
    schema: dict[str, Any] = {"type": json_type}
    if json_type == "array" and typing.get_args(annotation):
        item = _json_type(typing.get_args(annotation)[0])
        if item:
            schema["items"] = item
    return schema


def schema_from_signature(fn: Callable[..., Any]) -> dict[str, Any]:
    """Build a JSON schema from a function's parameters.

    Parameters without a default are required. A parameter named `ctx` is
    the ToolContext and is left out.
    """
    try:
        hints = typing.get_type_hints(fn)
    except (NameError, TypeError):
        # Unresolvable forward references; fall back to untyped properties
        hints = {}
    properties: dict[str, Any] = {}
    required: list[str] = []
    for name, param in inspect.signature(fn).parameters.items():
        if name in ("ctx", "self") or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        prop = _json_type(hints.get(name, Any))
        if param.default is param.empty:
            required.append(name)
        else:
            prop["default"] = param.default
        properties[name] = prop
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


class FunctionTool:
    """Tool backed by a plain or async function.

    Arguments from the model are passed as keyword arguments. When the
    function accepts a `ctx` parameter the ToolContext is passed as well.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        hooks: Any = None,
        permission_details: Callable[..., Any] | None = None,
    ) -> None:
        self.fn = fn
        self.name = name or fn.__name__
        self.description = description or inspect.getdoc(fn) or ""
        self.input_schema = input_schema or schema_from_signature(fn)
        self.metadata = dict(metadata or {})
        self.hooks = hooks
        self.permission_details = permission_details
        self._wants_ctx = "ctx" in inspect.signature(fn).parameters

    async def exec(self, args: dict[str, Any], ctx: ToolContext) -> Any:
        kwargs = dict(args)
        if self._wants_ctx:
            kwargs["ctx"] = ctx
        result = self.fn(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionTool({self.name!r})"


def tool(
    fn: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    input_schema: dict[str, Any] | None = None,
    readonly: bool | None = None,
    metadata: Mapping[str, Any] | None = None,
    hooks: Any = None,
) -> Any:
    """Decorator turning a function into a FunctionTool.

    `readonly=True` marks the tool as non-mutating (`{"mutates": False}`),
    which the readonly permission mode allows without asking.
    """

    def wrap(func: Callable[..., Any]) -> FunctionTool:
        meta = dict(metadata or {})
        if readonly is not None:
            meta.setdefault("mutates", not readonly)
        return FunctionTool(
            func,
            name=name,
            description=description,
            input_schema=input_schema,
            metadata=meta,
            hooks=hooks,
        )

    if fn is not None:
        return wrap(fn)
    return wrap
