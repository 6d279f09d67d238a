"""Outbound queue of user input that arrives while a turn is running."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from turnloop.core.types import Message

_log = logging.getLogger("turnloop.session.message_queue")

PendingKind = Literal["user", "reminder"]


def wrap_reminder(text: str, category: str | None = None) -> str:
    """Mark text as a system reminder so the model does not echo it to the user."""
    attrs = f' category="{category}"' if category else ""
    return f"<system-reminder{attrs}>\n{text}\n</system-reminder>"


def new_message_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


@dataclass(slots=True)
class PendingMessage:
    message_id: str
    message: Message
    kind: PendingKind
    metadata: dict[str, Any] = field(default_factory=dict)


class MessageQueue:
    """FIFO of user turns waiting for the session to reach an idle boundary.

    `flush()` hands the whole batch to `commit`, which appends and persists
    it. Entries are removed only once `commit` returned, so a failed flush is
    retried in full on the next boundary.
    """

    def __init__(self) -> None:
        self._pending: list[PendingMessage] = []

    def put(
        self,
        text: str,
        *,
        kind: PendingKind = "user",
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> str:
        message_id = message_id or new_message_id()
        payload = wrap_reminder(text, (metadata or {}).get("category")) if kind == "reminder" else text
        self._pending.append(
            PendingMessage(
                message_id=message_id,
                message=Message.user_text(payload),
                kind=kind,
                metadata=dict(metadata or {}),
            )
        )
        return message_id

    @property
    def has_user_input(self) -> bool:
        return any(p.kind == "user" for p in self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    async def flush(
        self, commit: Callable[[list[PendingMessage]], Awaitable[None]]
    ) -> list[PendingMessage]:
        if not self._pending:
            return []
        batch = list(self._pending)
        try:
            await commit(batch)
        except Exception:
            _log.error("Flush of %d queued message(s) failed, keeping them queued", len(batch))
            raise
        flushed = {p.message_id for p in batch}
        self._pending = [p for p in self._pending if p.message_id not in flushed]
        return batch

    def clear(self) -> None:
        self._pending.clear()
