"""Conversation data model shared by the engine, the store and providers."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(Enum):
    """Message role in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True, slots=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True, slots=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any = None
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            data["is_error"] = True
        return data


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its tagged dict form."""
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data.get("text", ""))
    if kind == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=data.get("content"),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unknown content block type: {kind!r}")


@dataclass(frozen=True, slots=True)
class Message:
    """One turn of the conversation.

    Attributes:
        role: Who produced the turn.
        content: Ordered content blocks.
    """

    role: Role
    content: tuple[ContentBlock, ...]

    @classmethod
    def user_text(cls, text: str) -> Message:
        return cls(Role.USER, (TextBlock(text),))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": [b.to_dict() for b in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=Role(data["role"]),
            content=tuple(block_from_dict(b) for b in data.get("content", [])),
        )


def unresolved_tool_uses(messages: list[Message]) -> list[ToolUseBlock]:
    """Every tool_use in the history without a matching tool_result, in order."""
    answered = {r.tool_use_id for m in messages for r in m.tool_results}
    return [u for m in messages for u in m.tool_uses if u.id not in answered]


def find_last_sfp(messages: list[Message]) -> int:
    """Index of the most recent stable fixed point, or -1.

    A user turn or an assistant turn without tool calls is a point where
    the conversation is at rest.
    """
    for index in range(len(messages) - 1, -1, -1):
        msg = messages[index]
        if msg.role is Role.USER:
            return index
        if msg.role is Role.ASSISTANT and not msg.tool_uses:
            return index
    return -1


class SessionState(Enum):
    READY = "READY"
    BUSY = "BUSY"
    PAUSED = "PAUSED"


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class Snapshot:
    """Point-in-time copy of a session's messages. Never mutated after creation."""

    id: str
    messages: list[Message]
    last_sfp_index: int
    created_at: str

    @classmethod
    def capture(cls, snapshot_id: str, messages: list[Message], last_sfp_index: int) -> Snapshot:
        return cls(
            id=snapshot_id,
            messages=copy.deepcopy(list(messages)),
            last_sfp_index=last_sfp_index,
            created_at=time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "last_sfp_index": self.last_sfp_index,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        return cls(
            id=data["id"],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            last_sfp_index=int(data.get("last_sfp_index", -1)),
            created_at=data.get("created_at", ""),
        )


@dataclass(slots=True)
class ToolCall:
    """A tool invocation as seen by hooks."""

    id: str
    name: str
    args: dict[str, Any]
    session_id: str


@dataclass(slots=True)
class ToolOutcome:
    """Result of a tool call before it is recorded as a tool_result."""

    id: str
    name: str
    ok: bool
    content: Any
    duration_ms: float | None = None


class ToolCallState(Enum):
    PENDING = "pending"
    APPROVAL_REQUIRED = "approval_required"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SEALED = "sealed"


@dataclass(slots=True)
class ToolCallRecord:
    """Durable lifecycle record of one tool call."""

    id: str
    name: str
    input: dict[str, Any]
    state: ToolCallState = ToolCallState.PENDING
    is_error: bool = False
    result: Any = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    audit: list[dict[str, Any]] = field(default_factory=list)

    def transition(self, state: ToolCallState, note: str | None = None) -> None:
        self.state = state
        self.updated_at = time.time()
        entry: dict[str, Any] = {"state": state.value, "timestamp": self.updated_at}
        if note:
            entry["note"] = note
        self.audit.append(entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "state": self.state.value,
            "is_error": self.is_error,
            "result": self.result,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "audit": list(self.audit),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallRecord:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            input=data.get("input") or {},
            state=ToolCallState(data.get("state", "pending")),
            is_error=bool(data.get("is_error", False)),
            result=data.get("result"),
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
            audit=list(data.get("audit") or []),
        )


@dataclass(frozen=True, slots=True)
class SessionStatus:
    state: SessionState
    session_id: str
    message_count: int
    last_sfp_index: int
    cursor: int
    step_count: int
    pending_permissions: tuple[str, ...] = ()
    failed_events: int = 0


@dataclass(slots=True)
class SessionInfo:
    """Durable metadata record of a session."""

    session_id: str
    template_id: str = "default"
    created_at: str = field(default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%S%z"))
    lineage: list[str] = field(default_factory=list)
    step_count: int = 0
    last_sfp_index: int = -1
    message_count: int = 0
    options: dict[str, Any] = field(default_factory=dict)
    permission_modes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "template_id": self.template_id,
            "created_at": self.created_at,
            "lineage": list(self.lineage),
            "step_count": self.step_count,
            "last_sfp_index": self.last_sfp_index,
            "message_count": self.message_count,
            "options": dict(self.options),
            "permission_modes": list(self.permission_modes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionInfo:
        return cls(
            session_id=data["session_id"],
            template_id=data.get("template_id", "default"),
            created_at=data.get("created_at", ""),
            lineage=list(data.get("lineage") or []),
            step_count=int(data.get("step_count", 0)),
            last_sfp_index=int(data.get("last_sfp_index", -1)),
            message_count=int(data.get("message_count", 0)),
            options=dict(data.get("options") or {}),
            permission_modes=list(data.get("permission_modes") or []),
        )
