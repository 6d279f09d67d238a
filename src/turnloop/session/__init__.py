"""Session engine, pool and supporting services."""

from turnloop.session.hooks import (
    Allow,
    Ask,
    Deny,
    HookManager,
    Hooks,
    Replace,
    Result,
    Update,
)
from turnloop.session.message_queue import MessageQueue, wrap_reminder
from turnloop.session.options import SessionOptions
from turnloop.session.permissions import (
    PermissionContext,
    PermissionEvaluator,
    PermissionModeRegistry,
    permission_modes,
)
from turnloop.session.pool import SessionPool
from turnloop.session.room import Room, RoomMember
from turnloop.session.session import Session
from turnloop.session.todo import TodoItem, TodoService
from turnloop.session.tool_runner import ToolRunner

__all__ = [
    "Allow",
    "Ask",
    "Deny",
    "HookManager",
    "Hooks",
    "MessageQueue",
    "PermissionContext",
    "PermissionEvaluator",
    "PermissionModeRegistry",
    "Replace",
    "Result",
    "Room",
    "RoomMember",
    "Session",
    "SessionOptions",
    "SessionPool",
    "TodoItem",
    "TodoService",
    "ToolRunner",
    "Update",
    "permission_modes",
]
