"""Session step engine.

A Session owns one conversation: its message history, event bus, tool set,
hook pipeline and permission policy. `send()` commits a user turn and starts
a background turn task; the task alternates between calling the model and
running the tool calls of the last assistant turn until the conversation
reaches a stable fixed point (an assistant turn without tool calls).

State machine:

    READY  --send-->  BUSY  --ask-->  PAUSED  --decide(allow)-->  BUSY
      ^                 |                |
      +---- done -------+---- done ------+  (deny, error, interrupt)

Input sent while BUSY or PAUSED waits in an outbound queue and is committed
at the next idle boundary, where it starts a new turn.
"""

from __future__ import annotations

import asyncio
import copy
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Literal

from turnloop.core.llm.provider import ModelProvider, ModelResponse, StreamChunk, assemble_stream
from turnloop.core.types import (
    Message,
    Role,
    SessionInfo,
    SessionState,
    SessionStatus,
    Snapshot,
    TextBlock,
    ToolCall,
    ToolCallRecord,
    ToolCallState,
    ToolOutcome,
    ToolResultBlock,
    ToolUseBlock,
    find_last_sfp,
    unresolved_tool_uses,
)
from turnloop.errors import (
    ErrorKind,
    PermissionNotFoundError,
    ProviderError,
    ResumeError,
    ResumeErrorCode,
    StoreError,
    TurnloopError,
)
from turnloop.events.bus import EventBus, EventStream
from turnloop.events.types import Event
from turnloop.logging import session_logger
from turnloop.sandbox.base import Sandbox
from turnloop.scheduling.scheduler import Scheduler
from turnloop.session.hooks import Ask, Deny, HookManager, Result
from turnloop.session.message_queue import MessageQueue, PendingKind, PendingMessage, new_message_id, wrap_reminder
from turnloop.session.options import SessionOptions
from turnloop.session.permissions import PermissionEvaluator, PermissionModeRegistry, permission_modes
from turnloop.session.todo import TodoItem, TodoService
from turnloop.session.tool_runner import ToolRunner
from turnloop.store.base import Store
from turnloop.tools.base import Tool, ToolContext, ToolDescriptor


Decision = Literal["allow", "deny"]
ResumeStrategy = Literal["crash", "manual"]

DEFAULT_INTERRUPT_NOTE = "Interrupted by user"
SEAL_NOTE = "No result found, likely crashed during execution"


@dataclass
class PendingPermission:
    """A tool call parked until decide() is called. In memory only."""

    call_id: str
    tool_name: str
    args: dict[str, Any]
    future: asyncio.Future[tuple[Decision, str | None]]


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S%z")


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, TurnloopError) and exc.kind is not None:
        return exc.kind.value
    return ErrorKind.PROVIDER_ERROR.value


class Session:
    """One long-lived conversational agent.

    Args:
        session_id: Durable id; also the store key.
        provider: Model provider.
        store: Durable store for messages, events, snapshots and meta.
        sandbox: Execution environment handed to tools.
        tools: Initial tool set.
        options: Model, concurrency and permission options.
        hooks: Initial hook set (registered with origin "session").
        template_id: Recorded in the meta record.
        lineage: Ancestor session ids (set for forks).
        mode_registry: Permission mode registry (default: process-wide).
    """

    def __init__(
        self,
        session_id: str,
        provider: ModelProvider,
        store: Store,
        sandbox: Sandbox,
        tools: Iterable[Tool] = (),
        options: SessionOptions | None = None,
        hooks: Any = None,
        template_id: str = "default",
        *,
        lineage: list[str] | None = None,
        mode_registry: PermissionModeRegistry | None = None,
    ) -> None:
        self.session_id = session_id
        self._log = session_logger(session_id)
        self.provider = provider
        self.store = store
        self.sandbox = sandbox
        self.options = options or SessionOptions()
        self.template_id = template_id
        self.lineage = list(lineage or [])
        self.created_at = _now_iso()

        self._messages: list[Message] = []
        self._state = SessionState.READY
        self._step_count = 0
        self._last_sfp_index = -1

        self._bus = EventBus(self.options.memory_cap)
        self._bus.attach_store(store, session_id)

        self._hooks = HookManager()
        self._tools: dict[str, Tool] = {}
        self._descriptors: dict[str, ToolDescriptor] = {}
        self._mode_registry = mode_registry or permission_modes
        self._permissions = PermissionEvaluator(self.options.permission, self._descriptors, self._mode_registry)
        self._runner = ToolRunner(self.options.max_concurrency)
        self._queue = MessageQueue()
        self._todos = TodoService(store, session_id)

        self._pending: dict[str, PendingPermission] = {}
        self._records: dict[str, ToolCallRecord] = {}
        self._batch_results: dict[str, ToolResultBlock] = {}
        self._batch_generation = 0
        self._call_tasks: dict[str, asyncio.Task[tuple[ToolResultBlock, bool]]] = {}
        self._executing: set[str] = set()
        # Results whose commit failed; carried into the next user turn
        self._uncommitted_results: dict[str, ToolResultBlock] = {}

        self._turn_task: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._scheduler: Scheduler | None = None
        self._watch_ids: list[str] = []
        self._children: list[Session] = []
        self._closed = False

        if hooks is not None:
            self._hooks.register(hooks, "session")
        self.register_tools(tools)

    @classmethod
    async def create(cls, session_id: str, provider: ModelProvider, store: Store, sandbox: Sandbox, **kwargs: Any) -> Session:
        """Construct a session and persist its meta record."""
        session = cls(session_id, provider, store, sandbox, **kwargs)
        await session._todos.load()
        await store.save_meta(session_id, session.info())
        return session

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def messages(self) -> list[Message]:
        """Copy of the message history."""
        return list(self._messages)

    @property
    def step_count(self) -> int:
        return self._step_count

    @property
    def events(self) -> EventBus:
        return self._bus

    @property
    def hooks(self) -> HookManager:
        return self._hooks

    @property
    def pending_permissions(self) -> list[str]:
        return list(self._pending)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise TurnloopError(f"Session is closed: {self.session_id}")

    async def send(
        self,
        text: str,
        *,
        kind: PendingKind = "user",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Commit a user turn and start processing without waiting for it.

        When the session is BUSY or PAUSED the text is queued and committed
        at the next idle boundary instead. Reminders are committed without
        starting a turn.

        Returns:
            The message id.

        Raises:
            StoreError: The user turn could not be persisted (READY only).
        """
        self._ensure_open()
        if self._state is not SessionState.READY:
            message_id = self._queue.put(text, kind=kind, metadata=metadata)
            self._log.debug("Queued %s message %s while %s", kind, message_id, self._state.value)
            return message_id

        message_id = new_message_id()
        payload = wrap_reminder(text, (metadata or {}).get("category")) if kind == "reminder" else text
        await self._commit_user_turn(Message.user_text(payload), message_ids=[message_id])
        if kind == "user":
            self._start_turn()
        return message_id

    async def chat(self, text: str) -> AsyncIterator[Event]:
        """Send `text` and yield progress events until its turn is done."""
        stream = self._bus.subscribe(("progress", "monitor"), since=self._bus.cursor)
        try:
            message_id = await self.send(text)
            committed = False
            async for event in stream:
                if event.channel == "monitor":
                    if event.type == "messages_update" and message_id in event.get("message_ids", ()):
                        committed = True
                    continue
                yield event
                if event.type == "done" and committed:
                    break
        finally:
            stream.close()

    async def reply(self, text: str) -> str:
        """Send `text` and return the final assistant text of the turn."""
        final = ""
        async for event in self.chat(text):
            if event.type == "text":
                final = event["text"]
        return final

    async def ask_llm(self, text: str, *, use_tools: bool = False, system: str | None = None) -> str:
        """One-off completion outside the session history."""
        response = await self.provider.complete(
            [Message.user_text(text)],
            tools=self._tool_schemas() if use_tools else None,
            system=system or self.options.system,
            max_tokens=self.options.max_tokens,
            temperature=self.options.temperature,
        )
        return "".join(b.text for b in response.content if isinstance(b, TextBlock))

    # ------------------------------------------------------------------
    # Commit helpers
    # ------------------------------------------------------------------

    async def _persist_messages(self) -> None:
        await self.store.save_messages(self.session_id, self._messages)
        await self.store.save_meta(self.session_id, self.info())

    async def _commit_user_turn(self, message: Message, *, message_ids: list[str] | None = None) -> None:
        """Append a user-role turn, persist it and count the step.

        On a persistence failure the in-memory state is rolled back and the
        StoreError propagates. Tool uses of the previous assistant turn that
        are still unanswered get their results prepended to `message`.
        """
        message = self._answer_dangling(message)
        previous = (self._step_count, self._last_sfp_index)
        self._messages.append(message)
        self._step_count += 1
        self._last_sfp_index = len(self._messages) - 1
        try:
            await self._persist_messages()
        except StoreError:
            self._messages.pop()
            self._step_count, self._last_sfp_index = previous
            raise
        self._uncommitted_results = {}

        self._bus.emit(
            "messages_update",
            message_count=len(self._messages),
            last_sfp_index=self._last_sfp_index,
            added=1,
            message_ids=list(message_ids or []),
        )
        self._bus.emit("commit", sfp_index=self._last_sfp_index)
        self._bus.emit("step_complete", step_count=self._step_count)
        await self._hooks.run_messages_changed(
            {"message_count": len(self._messages), "last_sfp_index": self._last_sfp_index}
        )

    def _answer_dangling(self, message: Message) -> Message:
        dangling = self._pending_tool_uses()
        if not dangling:
            return message
        answered = {r.tool_use_id for r in message.tool_results}
        carried = []
        for use in dangling:
            if use.id in answered:
                continue
            block = self._uncommitted_results.get(use.id)
            if block is None:
                block = ToolResultBlock(tool_use_id=use.id, content={"error": "No result was recorded"}, is_error=True)
            carried.append(block)
        if not carried:
            return message
        self._log.warning("Carrying %d uncommitted tool result(s) into the next turn", len(carried))
        return Message(Role.USER, tuple(carried) + tuple(message.content))

    async def _commit_assistant(self, content: list[Any]) -> Message:
        message = Message(Role.ASSISTANT, tuple(content))
        self._messages.append(message)
        at_rest = not message.tool_uses
        previous_sfp = self._last_sfp_index
        if at_rest:
            self._last_sfp_index = len(self._messages) - 1
        try:
            await self._persist_messages()
        except StoreError:
            self._messages.pop()
            self._last_sfp_index = previous_sfp
            raise

        self._bus.emit(
            "messages_update",
            message_count=len(self._messages),
            last_sfp_index=self._last_sfp_index,
            added=1,
            message_ids=[],
        )
        if at_rest:
            self._bus.emit("commit", sfp_index=self._last_sfp_index)
        await self._hooks.run_messages_changed(
            {"message_count": len(self._messages), "last_sfp_index": self._last_sfp_index}
        )
        return message

    async def _persist_records(self) -> None:
        try:
            await self.store.save_tool_call_records(self.session_id, list(self._records.values()))
        except StoreError as e:
            self._log.error("Failed to persist tool call records: %s", e)
            self._bus.emit("error", kind=ErrorKind.STORE_ERROR.value, message=str(e))

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if self._state is state:
            return
        self._state = state
        if state is SessionState.READY:
            self._idle.set()
        else:
            self._idle.clear()
        self._bus.emit("state", state=state.value)

    def _start_turn(self) -> None:
        if self._state is not SessionState.READY:
            return
        self._set_state(SessionState.BUSY)
        self._turn_task = asyncio.get_running_loop().create_task(self._run_turn())

    async def _run_turn(self) -> None:
        while True:
            reason = await self._drive()
            self._bus.emit("done", reason=reason, step_count=self._step_count)
            if not await self._drain_queue():
                break
        self._set_state(SessionState.READY)

    async def _drain_queue(self) -> bool:
        """Commit queued input as one user turn. True if it holds user input."""
        if not len(self._queue):
            return False

        async def commit(batch: list[PendingMessage]) -> None:
            blocks = tuple(block for entry in batch for block in entry.message.content)
            await self._commit_user_turn(Message(Role.USER, blocks), message_ids=[p.message_id for p in batch])

        try:
            batch = await self._queue.flush(commit)
        except StoreError as e:
            self._report_error(e)
            return False
        return any(p.kind == "user" for p in batch)

    def _report_error(self, exc: BaseException) -> None:
        kind = _error_kind(exc)
        self._log.error("Turn failed (%s): %s", kind, exc)
        self._bus.emit("error", kind=kind, message=str(exc))

    async def _drive(self) -> str:
        """Run model and tool steps until the history is at rest.

        Returns the reason the turn ended: "completed", "denied" or "error".
        """
        try:
            while True:
                pending = self._pending_tool_uses()
                if pending:
                    if await self._execute_batch(pending):
                        return "denied"
                    continue
                if not self._messages or self._messages[-1].role is Role.ASSISTANT:
                    return "completed"

                response = await self._call_model()
                for block in response.content:
                    if isinstance(block, TextBlock) and block.text:
                        self._bus.emit("text", text=block.text)
                if response.usage is not None:
                    self._bus.emit("usage", data=response.usage.to_dict())
                await self._commit_assistant(response.content)
        except Exception as e:
            self._report_error(e)
            return "error"

    def _pending_tool_uses(self) -> list[ToolUseBlock]:
        if not self._messages or self._messages[-1].role is not Role.ASSISTANT:
            return []
        return self._messages[-1].tool_uses

    def _tool_schemas(self) -> list[dict[str, Any]]:
        return [d.schema() for d in self._descriptors.values()]

    async def _call_model(self) -> ModelResponse:
        request: dict[str, Any] = {
            "messages": list(self._messages),
            "tools": self._tool_schemas() or None,
            "system": self.options.system,
            "max_tokens": self.options.max_tokens,
            "temperature": self.options.temperature,
        }
        await self._hooks.run_pre_model(request)

        stream = getattr(self.provider, "stream", None)
        try:
            if self.options.stream and stream is not None:
                chunks: list[StreamChunk] = []
                async for chunk in stream(
                    request["messages"],
                    tools=request["tools"],
                    system=request["system"],
                    max_tokens=request["max_tokens"],
                    temperature=request["temperature"],
                ):
                    if chunk.text:
                        self._bus.emit("text_chunk", delta=chunk.text)
                    chunks.append(chunk)
                response = assemble_stream(chunks)
            else:
                response = await self.provider.complete(
                    request["messages"],
                    tools=request["tools"],
                    system=request["system"],
                    max_tokens=request["max_tokens"],
                    temperature=request["temperature"],
                )
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(str(e) or type(e).__name__) from e

        await self._hooks.run_post_model(response)
        return response

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _tool_context(self, call_id: str | None = None) -> ToolContext:
        def emit(event_type: str, **data: Any) -> Event:
            return self._bus.emit("custom", name=event_type, call_id=call_id, data=data)

        return ToolContext(
            session_id=self.session_id,
            sandbox=self.sandbox,
            emit=emit,
            delegate=self.delegate,
            call_id=call_id,
        )

    async def _execute_batch(self, uses: list[ToolUseBlock]) -> bool:
        """Run one assistant turn's tool calls and commit their results.

        Returns True when a call was denied by a permission decision, which
        ends the turn without another model call.
        """
        self._batch_generation += 1
        generation = self._batch_generation
        self._batch_results = {}

        for use in uses:
            self._bus.emit("tool_use", id=use.id, name=use.name, input=use.input)
            self._records[use.id] = ToolCallRecord(id=use.id, name=use.name, input=dict(use.input))
        await self._persist_records()

        self._executing = set()
        self._call_tasks = {use.id: asyncio.ensure_future(self._run_call(use, generation)) for use in uses}
        # Shielded: interrupt() cancels only the calls that have not started executing
        outcomes = await asyncio.shield(asyncio.gather(*self._call_tasks.values(), return_exceptions=True))
        self._call_tasks = {}

        results: list[ToolResultBlock] = []
        denied = False
        for use, outcome in zip(uses, outcomes):
            if isinstance(outcome, BaseException):
                self._log.error("Tool call %s failed in its hooks: %s", use.id, outcome)
                outcome = (
                    self._finish_call(
                        use, generation, ok=False, content={"error": str(outcome)}, state=ToolCallState.FAILED
                    ),
                    False,
                )
            block, user_denied = outcome
            results.append(block)
            denied = denied or user_denied
        try:
            await self._commit_user_turn(Message(Role.USER, tuple(results)))
        except StoreError:
            self._uncommitted_results = {block.tool_use_id: block for block in results}
            raise
        await self._persist_records()
        return denied

    def _is_stale(self, generation: int) -> bool:
        return generation != self._batch_generation

    def _abandon(self, use: ToolUseBlock) -> tuple[ToolResultBlock, bool]:
        self._log.debug("Abandoning %s after interrupt", use.id)
        return ToolResultBlock(tool_use_id=use.id, content={"error": "Abandoned"}, is_error=True), False

    def _finish_call(
        self,
        use: ToolUseBlock,
        generation: int,
        *,
        ok: bool,
        content: Any,
        state: ToolCallState,
        duration_ms: float | None = None,
        note: str | None = None,
    ) -> ToolResultBlock:
        block = ToolResultBlock(tool_use_id=use.id, content=content, is_error=not ok)
        if generation != self._batch_generation:
            self._log.debug("Discarding late result for %s", use.id)
            return block

        record = self._records.get(use.id)
        if record is not None:
            record.is_error = not ok
            record.result = content
            record.transition(state, note)
        self._batch_results[use.id] = block
        payload: dict[str, Any] = {"id": use.id, "name": use.name, "ok": ok, "content": content}
        if duration_ms is not None:
            payload["duration_ms"] = duration_ms
        self._bus.emit("tool_result", **payload)
        return block

    async def _run_call(self, use: ToolUseBlock, generation: int) -> tuple[ToolResultBlock, bool]:
        record = self._records[use.id]
        tool = self._tools.get(use.name)
        if tool is None:
            block = self._finish_call(
                use, generation, ok=False, content={"error": f"Tool not found: {use.name}"}, state=ToolCallState.FAILED
            )
            return block, False

        call = ToolCall(id=use.id, name=use.name, args=dict(use.input), session_id=self.session_id)
        ctx = self._tool_context(use.id)

        needs_approval = False
        ask_meta: Any = None
        policy = self._permissions.evaluate(use.name)
        if policy == "deny":
            content = {"error": f"Tool {use.name} denied by permission policy", "kind": ErrorKind.TOOL_DENIED.value}
            return self._finish_call(use, generation, ok=False, content=content, state=ToolCallState.DENIED), False
        if policy == "ask":
            needs_approval = True
        else:
            decision = await self._hooks.run_pre_tool_use(call, ctx)
            if self._is_stale(generation):
                return self._abandon(use)
            if isinstance(decision, Deny):
                content = decision.tool_result or {"error": decision.reason or "Denied by policy"}
                return self._finish_call(use, generation, ok=False, content=content, state=ToolCallState.DENIED), False
            if isinstance(decision, Result):
                return (
                    self._finish_call(use, generation, ok=True, content=decision.value, state=ToolCallState.COMPLETED),
                    False,
                )
            if isinstance(decision, Ask):
                needs_approval, ask_meta = True, decision.meta

        if needs_approval:
            record.transition(ToolCallState.APPROVAL_REQUIRED)
            await self._persist_records()
            if self._is_stale(generation):
                return self._abandon(use)
            verdict, note = await self._request_permission(call, ctx, tool, ask_meta, generation)
            if self._is_stale(generation):
                return self._abandon(use)
            if verdict == "deny":
                content = {"error": note or "Denied by user", "kind": ErrorKind.TOOL_DENIED.value}
                block = self._finish_call(use, generation, ok=False, content=content, state=ToolCallState.DENIED, note=note)
                return block, True
            record.transition(ToolCallState.APPROVED, note)

        async def execute() -> Any:
            # A call queued behind the concurrency limit may outlive its batch
            if self._is_stale(generation):
                raise asyncio.CancelledError
            self._executing.add(use.id)
            record.transition(ToolCallState.EXECUTING)
            return await tool.exec(dict(call.args), ctx)

        if self._is_stale(generation):
            return self._abandon(use)
        started = time.perf_counter()
        try:
            value = await self._runner.run(execute)
            outcome = ToolOutcome(id=use.id, name=use.name, ok=True, content=value)
        except Exception as e:
            self._log.warning("Tool %s failed: %s", use.name, e)
            outcome = ToolOutcome(id=use.id, name=use.name, ok=False, content={"error": str(e)})
        outcome.duration_ms = round((time.perf_counter() - started) * 1000, 3)

        outcome = await self._hooks.run_post_tool_use(outcome, ctx)
        block = self._finish_call(
            use,
            generation,
            ok=outcome.ok,
            content=outcome.content,
            state=ToolCallState.COMPLETED if outcome.ok else ToolCallState.FAILED,
            duration_ms=outcome.duration_ms,
        )
        return block, False

    async def _request_permission(
        self, call: ToolCall, ctx: ToolContext, tool: Tool, meta: Any, generation: int
    ) -> tuple[Decision, str | None]:
        if self._is_stale(generation):
            # An interrupted batch must not pause a session that is READY again
            return "deny", None
        future: asyncio.Future[tuple[Decision, str | None]] = asyncio.get_running_loop().create_future()
        self._pending[call.id] = PendingPermission(call.id, call.name, call.args, future)

        details = None
        permission_details = getattr(tool, "permission_details", None)
        if permission_details is not None:
            details = permission_details(call, ctx)

        def respond(decision: Decision, note: str | None = None) -> None:
            self._resolve_permission(call.id, decision, note, by="respond")

        self._set_state(SessionState.PAUSED)
        self._bus.emit(
            "permission_ask",
            id=call.id,
            tool=call.name,
            args=call.args,
            meta=meta,
            details=details,
            respond=respond,
        )
        self._log.info("Awaiting permission for %s (%s)", call.name, call.id)
        return await future

    def _resolve_permission(self, call_id: str, decision: Decision, note: str | None, *, by: str) -> None:
        if decision not in ("allow", "deny"):
            raise ValueError(f"Decision must be 'allow' or 'deny', got {decision!r}")
        pending = self._pending.pop(call_id, None)
        if pending is None or pending.future.done():
            raise PermissionNotFoundError(call_id)

        pending.future.set_result((decision, note))
        self._bus.emit("permission_decision", id=call_id, decision=decision, note=note, by=by)
        self._log.info("Permission %s for %s (%s)", decision, pending.tool_name, call_id)
        if decision == "allow" and not self._pending and self._state is SessionState.PAUSED:
            self._set_state(SessionState.BUSY)

    async def decide(self, call_id: str, decision: Decision, note: str | None = None) -> None:
        """Resolve a pending permission.

        Raises:
            PermissionNotFoundError: Unknown or already resolved call id.
        """
        self._resolve_permission(call_id, decision, note, by="api")

    async def interrupt(self, note: str | None = None) -> None:
        """Abort the current turn.

        Calls that have not started executing (waiting on a hook, a
        permission or a concurrency slot) are cancelled and never run. Calls
        already inside their tool are not preempted and their late results
        are discarded. Every tool_use of the last assistant turn without a
        result gets an error result carrying `note`, so the history stays
        valid for the next model call.
        """
        note = note or DEFAULT_INTERRUPT_NOTE
        task = self._turn_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._turn_task = None

        for pending in self._pending.values():
            if not pending.future.done():
                pending.future.cancel()
        self._pending.clear()

        unresolved = self._pending_tool_uses()
        completed = dict(self._batch_results)
        self._batch_results = {}
        self._cancel_unstarted_calls()
        if unresolved:
            results = []
            for use in unresolved:
                block = completed.get(use.id)
                if block is None:
                    content = {"error": note}
                    block = ToolResultBlock(tool_use_id=use.id, content=content, is_error=True)
                    self._bus.emit("tool_result", id=use.id, name=use.name, ok=False, content=content)
                    record = self._records.get(use.id)
                    if record is not None:
                        record.is_error = True
                        record.result = content
                        record.transition(ToolCallState.FAILED, note)
                results.append(block)
            await self._commit_user_turn(Message(Role.USER, tuple(results)))
            await self._persist_records()
        elif self._messages:
            await self._persist_messages()

        self._log.info("Interrupted: %s", note)
        self._bus.emit("done", reason="interrupted", note=note, step_count=self._step_count)
        self._set_state(SessionState.READY)
        if await self._drain_queue():
            self._start_turn()

    def _cancel_unstarted_calls(self) -> None:
        """Retire the current batch; calls not yet inside their tool never run."""
        self._batch_generation += 1
        for call_id, call_task in self._call_tasks.items():
            if call_id not in self._executing and not call_task.done():
                call_task.cancel()
        self._call_tasks = {}
        self._executing = set()

    async def wait_idle(self) -> None:
        """Wait until the session is READY with no turn running."""
        while True:
            await self._idle.wait()
            task = self._turn_task
            if task is None or task.done():
                return
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Snapshots, forks, resume
    # ------------------------------------------------------------------

    async def snapshot(self, label: str | None = None) -> str:
        snapshot_id = label or f"sfp:{self._last_sfp_index}"
        await self.store.save_snapshot(
            self.session_id, Snapshot.capture(snapshot_id, self._messages, self._last_sfp_index)
        )
        return snapshot_id

    async def fork(self, selector: str | dict[str, str] | None = None) -> Session:
        """Branch the conversation into a new session.

        Args:
            selector: None to fork the current history, a snapshot id, or
                {"at": snapshot_id}.
        """
        if selector is None:
            snapshot = Snapshot.capture(f"sfp:{self._last_sfp_index}", self._messages, self._last_sfp_index)
        else:
            snapshot_id = selector if isinstance(selector, str) else selector.get("at") or f"sfp:{self._last_sfp_index}"
            loaded = await self.store.load_snapshot(self.session_id, snapshot_id)
            if loaded is None:
                raise ResumeError(ResumeErrorCode.SNAPSHOT_NOT_FOUND, f"Snapshot not found: {snapshot_id}")
            snapshot = loaded

        child_id = f"{self.session_id}/fork:{int(time.time() * 1000)}-{uuid.uuid4().hex[:4]}"
        child = Session(
            child_id,
            self.provider,
            self.store,
            self.sandbox,
            tools=self._tools.values(),
            options=copy.deepcopy(self.options),
            template_id=self.template_id,
            lineage=[*self.lineage, self.session_id],
            mode_registry=self._mode_registry,
        )
        for hooks in self._hooks.hook_sets("session"):
            child.use(hooks)

        child._messages = copy.deepcopy(snapshot.messages)
        child._last_sfp_index = snapshot.last_sfp_index
        child._step_count = sum(1 for m in child._messages if m.role is Role.USER)
        await child._persist_messages()

        self._bus.emit("forked", child_session_id=child_id, snapshot_id=snapshot.id)
        self._log.info("Forked %s from %s", child_id, snapshot.id)
        return child

    @classmethod
    async def resume(
        cls,
        session_id: str,
        *,
        provider: ModelProvider,
        store: Store,
        sandbox: Sandbox,
        tools: Iterable[Tool] = (),
        options: SessionOptions | None = None,
        hooks: Any = None,
        strategy: ResumeStrategy = "manual",
        auto_run: bool = False,
        mode_registry: PermissionModeRegistry | None = None,
    ) -> Session:
        """Rebuild a session from the store.

        With strategy "crash", every tool_use without a result is sealed with
        an error result tagged `sealed: True` before any new input is
        accepted. With `auto_run`, an unfinished turn continues.

        Raises:
            ResumeError: Missing session, corrupted data or an unregistered
                custom permission mode.
        """
        if not await store.exists(session_id):
            raise ResumeError(ResumeErrorCode.SESSION_NOT_FOUND, f"Session not found: {session_id}")
        try:
            messages = await store.load_messages(session_id)
            info = await store.load_meta(session_id)
            records = await store.load_tool_call_records(session_id)
            events = await store.read_events(session_id)
        except (StoreError, KeyError, ValueError, TypeError) as e:
            raise ResumeError(ResumeErrorCode.CORRUPTED_DATA, f"Cannot load {session_id}: {e}") from e
        if info is None and not messages:
            raise ResumeError(ResumeErrorCode.SESSION_NOT_FOUND, f"Session has no messages: {session_id}")

        registry = mode_registry or permission_modes
        if info is not None:
            missing = registry.validate_restore(info.permission_modes)
            if missing:
                raise ResumeError(
                    ResumeErrorCode.PERMISSION_MODE_MISSING,
                    f"Custom permission mode(s) not registered: {', '.join(missing)}",
                )
            if options is None and info.options:
                options = SessionOptions.from_dict(info.options)

        session = cls(
            session_id,
            provider,
            store,
            sandbox,
            tools=tools,
            options=options,
            hooks=hooks,
            template_id=info.template_id if info else "default",
            lineage=info.lineage if info else None,
            mode_registry=registry,
        )
        if info is not None and info.created_at:
            session.created_at = info.created_at
        session._messages = messages
        session._last_sfp_index = find_last_sfp(messages)
        user_turns = sum(1 for m in messages if m.role is Role.USER)
        session._step_count = max(info.step_count if info else 0, user_turns)
        session._records = {r.id: r for r in records}
        if events:
            session._bus.restore_cursor(max(int(e["cursor"]) for e in events))
        await session._todos.load()

        sealed: list[dict[str, Any]] = []
        if strategy == "crash":
            unresolved = unresolved_tool_uses(messages)
            if unresolved:
                results = []
                for use in unresolved:
                    content = {"error": f"Sealed due to crash: {SEAL_NOTE}", "sealed": True}
                    results.append(ToolResultBlock(tool_use_id=use.id, content=content, is_error=True))
                    sealed.append({"tool_use_id": use.id, "name": use.name, "args": use.input, "note": SEAL_NOTE})
                    record = session._records.get(use.id)
                    if record is None:
                        record = ToolCallRecord(id=use.id, name=use.name, input=dict(use.input))
                        session._records[use.id] = record
                    record.is_error = True
                    record.result = content
                    record.transition(ToolCallState.SEALED, SEAL_NOTE)
                await session._commit_user_turn(Message(Role.USER, tuple(results)))
                await session._persist_records()
                session._log.warning("Sealed %d tool call(s) on resume", len(sealed))
        session._bus.emit("resume", strategy=strategy, sealed=sealed)
        session._bus.emit("state", state=SessionState.READY.value)

        if auto_run and session._messages:
            last = session._messages[-1]
            if last.role is Role.USER or last.tool_uses:
                session._start_turn()
        return session

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self._state,
            session_id=self.session_id,
            message_count=len(self._messages),
            last_sfp_index=self._last_sfp_index,
            cursor=self._bus.cursor,
            step_count=self._step_count,
            pending_permissions=tuple(self._pending),
            failed_events=len(self._bus.failed_events),
        )

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            template_id=self.template_id,
            created_at=self.created_at,
            lineage=list(self.lineage),
            step_count=self._step_count,
            last_sfp_index=self._last_sfp_index,
            message_count=len(self._messages),
            options=self.options.to_dict(),
            permission_modes=self._mode_registry.serialize(),
        )

    def history(self, since: int | None = None, limit: int | None = None) -> list[Event]:
        events = self._bus.timeline(since)
        return events[:limit] if limit else events

    def tool_call_records(self) -> list[ToolCallRecord]:
        return list(self._records.values())

    # ------------------------------------------------------------------
    # Observation and extension
    # ------------------------------------------------------------------

    def subscribe(
        self,
        channels: Iterable[str] | str = ("progress",),
        *,
        kinds: Iterable[str] | None = None,
        since: int | None = None,
    ) -> EventStream:
        return self._bus.subscribe(channels, kinds=kinds, since=since)

    def on(self, event_type: str, handler: Callable[[Event], Any]) -> Callable[[], None]:
        return self._bus.on(event_type, handler)

    def use(self, hooks: Any) -> Session:
        self._hooks.register(hooks, "session")
        return self

    def register_tools(self, tools: Iterable[Tool]) -> Session:
        for tool in tools:
            self._tools[tool.name] = tool
            self._descriptors[tool.name] = ToolDescriptor.of(tool)
            tool_hooks = getattr(tool, "hooks", None)
            if tool_hooks is not None:
                self._hooks.register(tool_hooks, "tool")
        return self

    def schedule(self) -> Scheduler:
        """Scheduler driven by this session's step count."""
        if self._scheduler is None:
            scheduler = Scheduler(on_trigger=lambda info: self._bus.emit("scheduler_triggered", **info))
            self._bus.on("step_complete", lambda event: scheduler.notify_step(event["step_count"]))
            self._scheduler = scheduler
        return self._scheduler

    def watch_files(self, paths: list[str], listener: Callable[[Any], Any] | None = None) -> str:
        """Emit `file_changed` monitor events for changes to `paths`."""
        watch = getattr(self.sandbox, "watch_files", None)
        if watch is None:
            raise TurnloopError(f"Sandbox {self.sandbox.kind} does not support file watching")

        def on_change(change: Any) -> Any:
            self._bus.emit("file_changed", **change.to_dict())
            if listener is not None:
                return listener(change)
            return None

        watch_id = watch(paths, on_change)
        self._watch_ids.append(watch_id)
        return watch_id

    def unwatch_files(self, watch_id: str) -> None:
        unwatch = getattr(self.sandbox, "unwatch_files", None)
        if unwatch is not None:
            unwatch(watch_id)
        if watch_id in self._watch_ids:
            self._watch_ids.remove(watch_id)

    # ------------------------------------------------------------------
    # Todos
    # ------------------------------------------------------------------

    def todos(self) -> list[TodoItem]:
        return self._todos.list()

    async def _change_todos(self, change: Callable[[], Any]) -> None:
        previous = [t.to_dict() for t in self._todos.list()]
        await change()
        current = [t.to_dict() for t in self._todos.list()]
        self._bus.emit("todo_changed", previous=previous, current=current, version=self._todos.version)

    async def set_todos(self, todos: list[TodoItem | dict[str, Any]]) -> None:
        await self._change_todos(lambda: self._todos.set_todos(todos))

    async def update_todo(self, todo: TodoItem | dict[str, Any]) -> None:
        await self._change_todos(lambda: self._todos.update(todo))

    async def remove_todo(self, todo_id: str) -> None:
        await self._change_todos(lambda: self._todos.delete(todo_id))

    # ------------------------------------------------------------------
    # Delegation and teardown
    # ------------------------------------------------------------------

    async def delegate(self, text: str, *, system: str | None = None) -> str:
        """Run `text` on a fresh child session with the same tools and return its reply."""
        options = copy.deepcopy(self.options)
        if system is not None:
            options.system = system
        child = Session(
            f"{self.session_id}/task:{uuid.uuid4().hex[:8]}",
            self.provider,
            self.store,
            self.sandbox,
            tools=self._tools.values(),
            options=options,
            template_id=self.template_id,
            lineage=[*self.lineage, self.session_id],
            mode_registry=self._mode_registry,
        )
        self._children.append(child)
        try:
            return await child.reply(text)
        finally:
            await child.close()
            self._children.remove(child)

    async def close(self) -> None:
        """Stop the turn task, release watches and flush persisted events."""
        if self._closed:
            return
        self._closed = True
        task = self._turn_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._cancel_unstarted_calls()
        for pending in self._pending.values():
            if not pending.future.done():
                pending.future.cancel()
        self._pending.clear()
        for watch_id in list(self._watch_ids):
            self.unwatch_files(watch_id)
        if self._scheduler is not None:
            self._scheduler.clear()
        await self._bus.close()
        await self.store.flush_events(self.session_id)
        self._idle.set()
