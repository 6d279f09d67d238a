"""Per-session todo list, persisted under runtime/todos."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal

from turnloop.errors import TodoError

if TYPE_CHECKING:
    from turnloop.store.base import Store

TodoStatus = Literal["pending", "in_progress", "completed"]

TODO_STATUSES = ("pending", "in_progress", "completed")
MAX_IN_PROGRESS = 1


@dataclass(slots=True)
class TodoItem:
    id: str
    title: str
    status: TodoStatus = "pending"
    assignee: str | None = None
    notes: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "assignee": self.assignee,
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TodoItem:
        now = time.time()
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            status=data.get("status") or "pending",
            assignee=data.get("assignee"),
            notes=data.get("notes"),
            created_at=float(data.get("created_at") or now),
            updated_at=float(data.get("updated_at") or now),
        )


@dataclass(slots=True)
class TodoSnapshot:
    todos: list[TodoItem] = field(default_factory=list)
    version: int = 1
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "todos": [t.to_dict() for t in self.todos],
            "version": self.version,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TodoSnapshot:
        return cls(
            todos=[TodoItem.from_dict(t) for t in data.get("todos") or []],
            version=int(data.get("version", 1)),
            updated_at=float(data.get("updated_at") or time.time()),
        )


def validate_todos(todos: list[TodoItem]) -> None:
    """Raise TodoError unless ids are unique, titles set and at most one item is in progress."""
    seen: set[str] = set()
    in_progress = 0
    for todo in todos:
        if not todo.id:
            raise TodoError("Todo id is required")
        if todo.id in seen:
            raise TodoError(f"Duplicate todo id: {todo.id}")
        seen.add(todo.id)
        if not todo.title.strip():
            raise TodoError(f"Todo {todo.id} must have a title")
        if todo.status not in TODO_STATUSES:
            raise TodoError(f"Todo {todo.id} has invalid status {todo.status!r}")
        if todo.status == "in_progress":
            in_progress += 1
    if in_progress > MAX_IN_PROGRESS:
        raise TodoError("Only one todo can be in progress")


def _coerce(todo: TodoItem | dict[str, Any]) -> TodoItem:
    return todo if isinstance(todo, TodoItem) else TodoItem.from_dict(todo)


class TodoService:
    """Validated todo list with a version counter bumped on every change."""

    def __init__(self, store: Store, session_id: str) -> None:
        self._store = store
        self._session_id = session_id
        self._snapshot = TodoSnapshot()

    async def load(self) -> None:
        data = await self._store.load_todos(self._session_id)
        if data:
            self._snapshot = TodoSnapshot.from_dict(data)

    @property
    def version(self) -> int:
        return self._snapshot.version

    def list(self) -> list[TodoItem]:
        return [replace(t) for t in self._snapshot.todos]

    async def set_todos(self, todos: list[TodoItem | dict[str, Any]]) -> None:
        items = [_coerce(t) for t in todos]
        validate_todos(items)
        now = time.time()
        self._commit([replace(t, updated_at=now) for t in items], now)
        await self._persist()

    async def update(self, todo: TodoItem | dict[str, Any]) -> None:
        fields = todo.to_dict() if isinstance(todo, TodoItem) else dict(todo)
        todo_id = fields.get("id")
        existing = next((t for t in self._snapshot.todos if t.id == todo_id), None)
        if existing is None:
            raise TodoError(f"Todo not found: {todo_id}")

        now = time.time()
        changes = {k: v for k, v in fields.items() if k in ("title", "status", "assignee", "notes")}
        updated = replace(existing, **changes, updated_at=now)
        items = [updated if t.id == todo_id else t for t in self._snapshot.todos]
        validate_todos(items)
        self._commit(items, now)
        await self._persist()

    async def delete(self, todo_id: str) -> None:
        now = time.time()
        self._commit([t for t in self._snapshot.todos if t.id != todo_id], now)
        await self._persist()

    def _commit(self, todos: list[TodoItem], now: float) -> None:
        self._snapshot = TodoSnapshot(todos=todos, version=self._snapshot.version + 1, updated_at=now)

    async def _persist(self) -> None:
        await self._store.save_todos(self._session_id, self._snapshot.to_dict())
