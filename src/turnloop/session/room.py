"""Group messaging between pooled sessions."""

from __future__ import annotations

import re
from dataclasses import dataclass

from turnloop.errors import PoolError
from turnloop.logging import get_logger
from turnloop.session.pool import SessionPool

log = get_logger("session.room")

MENTION = re.compile(r"@(\w+)")


@dataclass(frozen=True, slots=True)
class RoomMember:
    name: str
    session_id: str


class Room:
    """Named members mapped to pooled sessions.

    `say()` delivers `[from:<sender>] <text>` to every mentioned member, or,
    without mentions, to every member except the sender.
    """

    def __init__(self, pool: SessionPool) -> None:
        self._pool = pool
        self._members: dict[str, str] = {}

    def join(self, name: str, session_id: str) -> None:
        if name in self._members:
            raise PoolError(f"Member already exists: {name}")
        self._members[name] = session_id

    def leave(self, name: str) -> None:
        self._members.pop(name, None)

    def members(self) -> list[RoomMember]:
        return [RoomMember(name, session_id) for name, session_id in self._members.items()]

    async def say(self, sender: str, text: str) -> dict[str, str]:
        """Deliver a message and wait for the recipients' replies.

        Returns:
            Member name to reply text, for each recipient that is live in
            the pool.
        """
        mentions = MENTION.findall(text)
        if mentions:
            recipients = [m for m in dict.fromkeys(mentions) if m in self._members]
        else:
            recipients = [name for name in self._members if name != sender]

        replies: dict[str, str] = {}
        for name in recipients:
            session = self._pool.get(self._members[name])
            if session is None:
                log.warning("Room member %s has no live session", name)
                continue
            replies[name] = await session.reply(f"[from:{sender}] {text}")
        return replies
