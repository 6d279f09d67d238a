"""Pool of live sessions sharing one store, provider and sandbox."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from turnloop.errors import PoolError
from turnloop.logging import get_logger, setup_logging
from turnloop.session.session import ResumeStrategy, Session

if TYPE_CHECKING:
    from turnloop.config.schema import Config
    from turnloop.core.llm.provider import ModelProvider
    from turnloop.core.types import SessionStatus
    from turnloop.sandbox.base import Sandbox
    from turnloop.store.base import Store

log = get_logger("session.pool")

# Per-session keyword arguments (tools, options, hooks, template_id, ...)
SessionConfigFactory = Callable[[str], Mapping[str, Any]]


class SessionPool:
    """Manages many sessions by id.

    Evicting a session only drops it from memory; it can be resumed from
    the store later. `delete` removes durable state as well.

    Args:
        store: Shared durable store.
        provider: Default model provider.
        sandbox: Default sandbox.
        max_sessions: Maximum number of live sessions.
    """

    def __init__(
        self,
        store: Store,
        provider: ModelProvider,
        sandbox: Sandbox,
        max_sessions: int = 50,
    ) -> None:
        if max_sessions <= 0:
            raise ValueError("max_sessions must be positive")
        self._store = store
        self._provider = provider
        self._sandbox = sandbox
        self._max_sessions = max_sessions
        self._sessions: dict[str, Session] = {}

    @classmethod
    def from_config(cls, config: Config, store: Store, provider: ModelProvider, sandbox: Sandbox) -> SessionPool:
        """Build a pool from config; also initializes logging from `config.logging`."""
        setup_logging(config.logging)
        return cls(store, provider, sandbox, max_sessions=config.pool.max_sessions)

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    def _check_capacity(self) -> None:
        if len(self._sessions) >= self._max_sessions:
            raise PoolError(f"Pool is full (max {self._max_sessions} sessions)")

    def _deps(self, config: Mapping[str, Any]) -> dict[str, Any]:
        kwargs = dict(config)
        kwargs.setdefault("provider", self._provider)
        kwargs.setdefault("sandbox", self._sandbox)
        return kwargs

    async def create(self, session_id: str, **config: Any) -> Session:
        """Create and register a new session.

        Raises:
            PoolError: The id is already live or the pool is full.
        """
        if session_id in self._sessions:
            raise PoolError(f"Session already exists: {session_id}")
        self._check_capacity()

        kwargs = self._deps(config)
        session = await Session.create(
            session_id, kwargs.pop("provider"), self._store, kwargs.pop("sandbox"), **kwargs
        )
        self._sessions[session_id] = session
        log.info("Created session %s (%d/%d)", session_id, len(self._sessions), self._max_sessions)
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list(self, prefix: str | None = None) -> list[str]:
        ids = list(self._sessions)
        return [i for i in ids if i.startswith(prefix)] if prefix else ids

    def status(self, session_id: str) -> SessionStatus | None:
        session = self._sessions.get(session_id)
        return session.status() if session else None

    async def fork(self, session_id: str, selector: str | dict[str, str] | None = None) -> Session:
        """Fork a live session. The fork is returned but not added to the pool."""
        session = self._sessions.get(session_id)
        if session is None:
            raise PoolError(f"Session not found: {session_id}")
        return await session.fork(selector)

    async def resume(
        self,
        session_id: str,
        *,
        strategy: ResumeStrategy = "manual",
        auto_run: bool = False,
        **config: Any,
    ) -> Session:
        """Return the live session, or restore it from the store.

        Raises:
            PoolError: The pool is full or the store has no such session.
            ResumeError: The stored session cannot be restored.
        """
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing
        self._check_capacity()
        if not await self._store.exists(session_id):
            raise PoolError(f"Session not found in store: {session_id}")

        kwargs = self._deps(config)
        session = await Session.resume(
            session_id,
            store=self._store,
            strategy=strategy,
            auto_run=auto_run,
            **kwargs,
        )
        self._sessions[session_id] = session
        log.info("Resumed session %s (%s)", session_id, strategy)
        return session

    async def resume_all(
        self,
        factory: SessionConfigFactory,
        *,
        strategy: ResumeStrategy = "manual",
        auto_run: bool = False,
    ) -> list[Session]:
        """Resume every stored session until the pool is full.

        Sessions that fail to resume are logged and skipped.
        """
        resumed = []
        for session_id in await self._store.list():
            if len(self._sessions) >= self._max_sessions:
                break
            if session_id in self._sessions:
                continue
            try:
                session = await self.resume(session_id, strategy=strategy, auto_run=auto_run, **factory(session_id))
            except Exception as e:
                log.error("Failed to resume %s: %s", session_id, e)
                continue
            resumed.append(session)
        return resumed

    async def evict(self, session_id: str) -> bool:
        """Close a live session and drop it from the pool. Durable state is kept."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def delete(self, session_id: str) -> None:
        """Evict the session and delete everything stored for it."""
        await self.evict(session_id)
        await self._store.delete(session_id)
        log.info("Deleted session %s", session_id)

    @property
    def size(self) -> int:
        return len(self._sessions)

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.evict(session_id)
