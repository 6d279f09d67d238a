"""Tests for the session step engine.

Tests coverage for:
- src/turnloop/session/session.py
"""

from __future__ import annotations

import asyncio

import pytest

from tests.utils import ScriptedProvider, event_types, text_response, tool_response, wait_for
from turnloop.config.schema import PermissionConfig
from turnloop.core.types import (
    Message,
    Role,
    SessionState,
    TextBlock,
    ToolCallState,
    ToolUseBlock,
    unresolved_tool_uses,
)
from turnloop.errors import PermissionNotFoundError, StoreError, TurnloopError
from turnloop.session.hooks import Ask, Deny, Hooks, Result, Update
from turnloop.session.options import SessionOptions
from turnloop.store.memory import MemoryStore
from turnloop.tools.base import tool


async def collect_until_done(stream, timeout: float = 2.0):
    """Events from `stream` up to and including the first `done`."""
    events = []

    async def run():
        async for event in stream:
            events.append(event)
            if event.type == "done":
                break

    await asyncio.wait_for(run(), timeout)
    stream.close()
    return events


class FailingStore(MemoryStore):
    """Memory store whose message writes fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_messages = False

    async def save_messages(self, session_id, messages):
        if self.fail_messages:
            raise StoreError("disk full")
        await super().save_messages(session_id, messages)


# =============================================================================
# Basic turns
# =============================================================================


class TestBasicTurn:
    """Tests for send() and the model/tool loop."""

    @pytest.mark.asyncio
    async def test_send_without_tools_reaches_sfp(self, make_session, provider):
        provider.add(text_response("hello there"))
        session = await make_session()

        await session.send("hi")
        await session.wait_idle()

        assert session.state is SessionState.READY
        assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]
        assert session.messages[-1].text == "hello there"
        assert session.status().last_sfp_index == 1

    @pytest.mark.asyncio
    async def test_ls_tool_adds_one_step_and_orders_progress_events(
        self, make_session, provider, ls_tool, calls
    ):
        provider.add(tool_response(("t1", "ls", {"path": "."})), text_response("two files"))
        session = await make_session(tools=[ls_tool])
        stream = session.subscribe(["progress"])

        await session.send("list files")
        steps_after_send = session.status().step_count
        events = await collect_until_done(stream)
        await session.wait_idle()

        assert calls == ["ls"]
        assert session.status().step_count == steps_after_send + 1
        assert event_types(events, "tool_use", "tool_result", "done") == ["tool_use", "tool_result", "done"]
        assert all(e.channel == "progress" for e in events)

        tool_result = session.messages[2].tool_results[0]
        assert tool_result.tool_use_id == "t1"
        assert tool_result.content == ["a.txt", "b.txt"]
        assert not tool_result.is_error

    @pytest.mark.asyncio
    async def test_tool_results_committed_in_request_order(self, make_session, provider):
        gate = asyncio.Event()

        @tool
        async def slow() -> str:
            await gate.wait()
            return "slow"

        @tool
        async def fast() -> str:
            gate.set()
            return "fast"

        provider.add(tool_response(("a", "slow", {}), ("b", "fast", {})), text_response("ok"))
        session = await make_session(tools=[slow, fast])

        await session.send("go")
        await session.wait_idle()

        results = session.messages[2].tool_results
        assert [r.tool_use_id for r in results] == ["a", "b"]
        assert [r.content for r in results] == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_error_result(self, make_session, provider):
        @tool
        async def broken() -> None:
            raise RuntimeError("kaput")

        provider.add(tool_response(("t1", "broken", {})), text_response("sorry"))
        session = await make_session(tools=[broken])

        await session.send("try it")
        await session.wait_idle()

        result = session.messages[2].tool_results[0]
        assert result.is_error
        assert result.content == {"error": "kaput"}
        # The turn carried on to a final answer
        assert session.messages[-1].text == "sorry"

    @pytest.mark.asyncio
    async def test_unknown_tool_gets_error_result(self, make_session, provider):
        provider.add(tool_response(("t1", "missing", {})), text_response("ok"))
        session = await make_session()

        await session.send("go")
        await session.wait_idle()

        result = session.messages[2].tool_results[0]
        assert result.is_error
        assert "Tool not found" in result.content["error"]

    @pytest.mark.asyncio
    async def test_reply_returns_final_text(self, make_session, provider, ls_tool):
        provider.add(tool_response(("t1", "ls", {})), text_response("a.txt and b.txt"))
        session = await make_session(tools=[ls_tool])

        assert await session.reply("what is here?") == "a.txt and b.txt"

    @pytest.mark.asyncio
    async def test_usage_and_text_events(self, make_session, provider):
        provider.add(text_response("hi"))
        session = await make_session()

        await session.send("hello")
        await session.wait_idle()

        usage = [e for e in session.history() if e.type == "usage"]
        assert usage[0]["data"]["total_tokens"] == 15
        assert [e["text"] for e in session.history() if e.type == "text"] == ["hi"]

    @pytest.mark.asyncio
    async def test_tool_call_records_track_lifecycle(self, make_session, provider, ls_tool, memory_store):
        provider.add(tool_response(("t1", "ls", {})), text_response("done"))
        session = await make_session(tools=[ls_tool])

        await session.send("go")
        await session.wait_idle()

        records = await memory_store.load_tool_call_records("s1")
        assert len(records) == 1
        assert records[0].state is ToolCallState.COMPLETED
        assert [a["state"] for a in records[0].audit] == ["executing", "completed"]


# =============================================================================
# Errors
# =============================================================================


class TestErrors:
    """Tests for provider and store failures."""

    @pytest.mark.asyncio
    async def test_provider_error_emits_error_and_returns_to_ready(self, make_session, provider):
        provider.add(RuntimeError("boom"))
        session = await make_session()
        stream = session.subscribe(["progress", "monitor"], kinds=["error", "done"])

        await session.send("hi")
        events = await collect_until_done(stream)
        await session.wait_idle()

        assert events[0].type == "error"
        assert events[0]["kind"] == "ProviderError"
        assert "boom" in events[0]["message"]
        assert events[1]["reason"] == "error"
        assert session.state is SessionState.READY

    @pytest.mark.asyncio
    async def test_store_error_on_send_propagates_and_rolls_back(self, provider, sandbox):
        from turnloop.session.session import Session

        store = FailingStore()
        session = await Session.create("s1", provider, store, sandbox)
        store.fail_messages = True

        with pytest.raises(StoreError):
            await session.send("hi")

        assert session.messages == []
        assert session.step_count == 0
        assert session.state is SessionState.READY
        await session.close()

    @pytest.mark.asyncio
    async def test_failed_result_commit_is_carried_into_next_turn(self, make_session, provider):
        store = FailingStore()
        runs = []

        @tool
        async def listing() -> list[str]:
            runs.append("listing")
            store.fail_messages = True
            return ["a.txt"]

        provider.add(tool_response(("t1", "listing", {})), text_response("done"))
        session = await make_session(store=store, tools=[listing])

        await session.send("go")
        await session.wait_idle()
        assert session.messages[-1].tool_uses[0].id == "t1"
        assert any(e.type == "error" and e["kind"] == "StoreError" for e in session.history())

        store.fail_messages = False
        await session.send("again")
        await session.wait_idle()

        sent = provider.calls[-1]
        assert unresolved_tool_uses(sent) == []
        assert sent[2].tool_results[0].content == ["a.txt"]
        assert sent[2].text == "again"
        assert runs == ["listing"]
        assert session.messages[-1].text == "done"

    @pytest.mark.asyncio
    async def test_send_after_close_raises(self, make_session):
        session = await make_session()
        await session.close()

        with pytest.raises(TurnloopError):
            await session.send("hi")


# =============================================================================
# Permissions
# =============================================================================


class TestPermissions:
    """Tests for the approval pause/resume protocol."""

    @pytest.fixture
    def approval_options(self):
        return SessionOptions(permission=PermissionConfig(require_approval_tools=["write"]))

    @pytest.mark.asyncio
    async def test_require_approval_pauses_and_deny_skips_exec(
        self, make_session, provider, write_tool, calls, approval_options
    ):
        provider.add(tool_response(("t1", "write", {"path": "x", "content": "y"})), text_response("unused"))
        session = await make_session(tools=[write_tool], options=approval_options)

        await session.send("write it")
        await wait_for(lambda: session.state is SessionState.PAUSED)
        assert session.pending_permissions == ["t1"]

        await session.decide("t1", "deny", "not now")
        await session.wait_idle()

        assert session.state is SessionState.READY
        assert calls == []
        result = session.messages[-1].tool_results[0]
        assert result.is_error
        assert result.content["error"] == "not now"
        # Denial ends the turn without another model call
        assert len(provider.calls) == 1
        done = [e for e in session.history() if e.type == "done"]
        assert done[-1]["reason"] == "denied"

    @pytest.mark.asyncio
    async def test_allow_resumes_execution(self, make_session, provider, write_tool, calls, approval_options):
        provider.add(tool_response(("t1", "write", {"path": "x", "content": "y"})), text_response("written"))
        session = await make_session(tools=[write_tool], options=approval_options)

        await session.send("write it")
        await wait_for(lambda: session.state is SessionState.PAUSED)
        await session.decide("t1", "allow")
        await session.wait_idle()

        assert calls == ["write"]
        assert session.messages[-1].text == "written"
        decisions = [e for e in session.history() if e.type == "permission_decision"]
        assert decisions[0]["decision"] == "allow"
        assert decisions[0]["by"] == "api"

    @pytest.mark.asyncio
    async def test_decide_twice_fails(self, make_session, provider, write_tool, approval_options):
        provider.add(tool_response(("t1", "write", {"path": "x", "content": "y"})), text_response("ok"))
        session = await make_session(tools=[write_tool], options=approval_options)

        await session.send("write it")
        await wait_for(lambda: session.state is SessionState.PAUSED)
        await session.decide("t1", "allow")

        with pytest.raises(PermissionNotFoundError):
            await session.decide("t1", "allow")
        await session.wait_idle()

    @pytest.mark.asyncio
    async def test_decide_unknown_id_fails(self, make_session):
        session = await make_session()

        with pytest.raises(PermissionNotFoundError) as exc_info:
            await session.decide("nope", "allow")
        assert exc_info.value.call_id == "nope"

    @pytest.mark.asyncio
    async def test_respond_callback_on_permission_ask(
        self, make_session, provider, write_tool, calls, approval_options
    ):
        provider.add(tool_response(("t1", "write", {"path": "x", "content": "y"})), text_response("ok"))
        session = await make_session(tools=[write_tool], options=approval_options)
        session.on("permission_ask", lambda event: event["respond"]("allow"))

        await session.send("write it")
        await session.wait_idle()

        assert calls == ["write"]
        ask = next(e for e in session.history() if e.type == "permission_ask")
        assert ask.channel == "control"
        assert ask["tool"] == "write"

    @pytest.mark.asyncio
    async def test_deny_list_rejects_and_turn_continues(self, make_session, provider, write_tool, calls):
        provider.add(tool_response(("t1", "write", {"path": "x", "content": "y"})), text_response("could not"))
        options = SessionOptions(permission=PermissionConfig(deny_tools=["write"]))
        session = await make_session(tools=[write_tool], options=options)

        await session.send("write it")
        await session.wait_idle()

        assert calls == []
        assert session.messages[2].tool_results[0].is_error
        assert session.messages[-1].text == "could not"

    @pytest.mark.asyncio
    async def test_readonly_mode_allows_readonly_tools(self, make_session, provider, ls_tool, write_tool, calls):
        provider.add(
            tool_response(("t1", "ls", {}), ("t2", "write", {"path": "x", "content": "y"})),
            text_response("done"),
        )
        options = SessionOptions(permission=PermissionConfig(mode="readonly"))
        session = await make_session(tools=[ls_tool, write_tool], options=options)

        await session.send("go")
        await session.wait_idle()

        assert calls == ["ls"]
        results = session.messages[2].tool_results
        assert not results[0].is_error
        assert results[1].is_error


# =============================================================================
# Hooks
# =============================================================================


class TestHooks:
    """Tests for hook decisions inside a turn."""

    @pytest.mark.asyncio
    async def test_pre_hook_deny_records_error(self, make_session, provider, ls_tool, calls):
        provider.add(tool_response(("t1", "ls", {})), text_response("ok"))
        session = await make_session(tools=[ls_tool], hooks=Hooks(pre_tool_use=lambda call, ctx: Deny("no ls")))

        await session.send("go")
        await session.wait_idle()

        assert calls == []
        result = session.messages[2].tool_results[0]
        assert result.is_error
        assert result.content == {"error": "no ls"}

    @pytest.mark.asyncio
    async def test_pre_hook_result_skips_exec(self, make_session, provider, ls_tool, calls):
        provider.add(tool_response(("t1", "ls", {})), text_response("ok"))
        session = await make_session(tools=[ls_tool])
        session.use({"pre_tool_use": lambda call, ctx: Result(["cached.txt"])})

        await session.send("go")
        await session.wait_idle()

        assert calls == []
        assert session.messages[2].tool_results[0].content == ["cached.txt"]

    @pytest.mark.asyncio
    async def test_pre_hook_ask_pauses(self, make_session, provider, ls_tool):
        provider.add(tool_response(("t1", "ls", {})), text_response("ok"))
        session = await make_session(tools=[ls_tool], hooks=Hooks(pre_tool_use=lambda call, ctx: Ask({"why": "audit"})))

        await session.send("go")
        await wait_for(lambda: session.state is SessionState.PAUSED)
        ask = next(e for e in session.history() if e.type == "permission_ask")
        assert ask["meta"] == {"why": "audit"}

        await session.decide("t1", "allow")
        await session.wait_idle()
        assert session.messages[-1].text == "ok"

    @pytest.mark.asyncio
    async def test_post_hook_update_rewrites_outcome(self, make_session, provider, ls_tool):
        provider.add(tool_response(("t1", "ls", {})), text_response("ok"))

        async def redact(outcome, ctx):
            return Update({"content": "[redacted]"})

        session = await make_session(tools=[ls_tool], hooks=Hooks(post_tool_use=redact))

        await session.send("go")
        await session.wait_idle()

        assert session.messages[2].tool_results[0].content == "[redacted]"

    @pytest.mark.asyncio
    async def test_tool_hooks_registered_with_tool(self, make_session, provider, calls):
        @tool(hooks={"pre_tool_use": lambda call, ctx: Deny("blocked by tool hook")})
        async def guarded() -> str:
            calls.append("guarded")
            return "ran"

        provider.add(tool_response(("t1", "guarded", {})), text_response("ok"))
        session = await make_session(tools=[guarded])

        await session.send("go")
        await session.wait_idle()

        assert calls == []
        assert [h.origin for h in session.hooks.registered()] == ["tool"]

    @pytest.mark.asyncio
    async def test_pre_model_hook_sees_request(self, make_session, provider, ls_tool):
        seen = []
        provider.add(text_response("ok"))
        session = await make_session(tools=[ls_tool], hooks={"pre_model": lambda request: seen.append(request)})

        await session.send("hi")
        await session.wait_idle()

        assert seen[0]["tools"][0]["name"] == "ls"
        assert seen[0]["messages"][0].text == "hi"


# =============================================================================
# Interrupt and queued input
# =============================================================================


class TestInterrupt:
    """Tests for interrupt() and input sent during a turn."""

    @pytest.mark.asyncio
    async def test_interrupt_seals_running_tool(self, make_session, provider, calls):
        gate = asyncio.Event()

        @tool
        async def slow() -> str:
            calls.append("slow")
            await gate.wait()
            return "late"

        provider.add(tool_response(("t1", "slow", {})))
        session = await make_session(tools=[slow])

        await session.send("go")
        await wait_for(lambda: calls == ["slow"])
        await session.interrupt()

        assert session.state is SessionState.READY
        result = session.messages[-1].tool_results[0]
        assert result.is_error
        assert result.content == {"error": "Interrupted by user"}
        done = [e for e in session.history() if e.type == "done"]
        assert done[-1]["reason"] == "interrupted"

        # A late result is discarded
        count = len(session.messages)
        gate.set()
        await asyncio.sleep(0.02)
        assert len(session.messages) == count

    @pytest.mark.asyncio
    async def test_interrupt_while_paused_cancels_permission(self, make_session, provider, write_tool):
        provider.add(tool_response(("t1", "write", {"path": "x", "content": "y"})))
        options = SessionOptions(permission=PermissionConfig(mode="approval"))
        session = await make_session(tools=[write_tool], options=options)

        await session.send("go")
        await wait_for(lambda: session.state is SessionState.PAUSED)
        await session.interrupt("stop")

        assert session.pending_permissions == []
        assert session.messages[-1].tool_results[0].content == {"error": "stop"}
        with pytest.raises(PermissionNotFoundError):
            await session.decide("t1", "allow")

    @pytest.mark.asyncio
    async def test_interrupt_cancels_calls_waiting_for_a_slot(self, make_session, provider):
        ran = []
        gate = asyncio.Event()

        @tool
        async def slow() -> str:
            ran.append("slow")
            await gate.wait()
            return "slow done"

        @tool(readonly=False)
        async def danger() -> str:
            ran.append("danger")
            return "side effect"

        provider.add(tool_response(("c1", "slow", {}), ("c2", "danger", {})))
        session = await make_session(tools=[slow, danger], options=SessionOptions(max_concurrency=1))

        await session.send("go")
        await wait_for(lambda: ran == ["slow"])
        await session.interrupt("stop")
        gate.set()
        await asyncio.sleep(0.05)

        assert ran == ["slow"]
        results = [(r.tool_use_id, r.content) for r in session.messages[-1].tool_results]
        assert results == [("c1", {"error": "stop"}), ("c2", {"error": "stop"})]
        assert session.state is SessionState.READY

    @pytest.mark.asyncio
    async def test_hook_finishing_after_interrupt_does_not_pause(self, make_session, provider, ls_tool, calls):
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def audit(call, ctx):
            entered.set()
            await gate.wait()
            return Ask({"why": "audit"})

        provider.add(tool_response(("t1", "ls", {})), text_response("next"))
        session = await make_session(tools=[ls_tool], hooks=Hooks(pre_tool_use=audit))

        await session.send("go")
        await asyncio.wait_for(entered.wait(), 2)
        await session.interrupt("stop")
        gate.set()
        await asyncio.sleep(0.02)

        assert session.state is SessionState.READY
        assert session.pending_permissions == []
        assert calls == []
        assert session.messages[-1].tool_results[0].content == {"error": "stop"}

        await session.send("continue")
        await asyncio.wait_for(session.wait_idle(), 2)
        assert session.messages[-1].text == "next"

    @pytest.mark.asyncio
    async def test_send_while_busy_is_queued(self, make_session, provider):
        provider.gate = asyncio.Event()
        provider.add(text_response("first answer"), text_response("second answer"))
        session = await make_session()

        await session.send("first")
        await wait_for(lambda: len(provider.calls) == 1)
        second_id = await session.send("second")

        assert session.state is SessionState.BUSY
        assert len(session.messages) == 1

        provider.gate.set()
        await session.wait_idle()

        assert [m.text for m in session.messages] == ["first", "first answer", "second", "second answer"]
        update = next(e for e in session.history() if second_id in e.get("message_ids", ()))
        assert update.type == "messages_update"

    @pytest.mark.asyncio
    async def test_reminder_does_not_start_turn(self, make_session, provider):
        session = await make_session()

        await session.send("check the build", kind="reminder", metadata={"category": "ci"})

        assert session.state is SessionState.READY
        assert provider.calls == []
        assert session.messages[0].text.startswith('<system-reminder category="ci">')


# =============================================================================
# Snapshots and forks
# =============================================================================


class TestFork:
    """Tests for snapshot() and fork()."""

    @pytest.mark.asyncio
    async def test_fork_isolation(self, make_session, provider):
        provider.add(text_response("parent answer"), text_response("child answer"))
        parent = await make_session()
        await parent.reply("hello")

        child = await parent.fork()
        parent_messages = parent.messages
        parent_cursor = parent.events.cursor

        await child.reply("only in child")

        assert parent.messages == parent_messages
        assert parent.events.cursor == parent_cursor
        assert len(child.messages) == 4
        assert child.session_id.startswith("s1/fork:")
        assert child.lineage == ["s1"]
        await child.close()

    @pytest.mark.asyncio
    async def test_fork_from_snapshot(self, make_session, provider, memory_store):
        provider.add(text_response("one"), text_response("two"))
        session = await make_session()
        await session.reply("first")
        snapshot_id = await session.snapshot("after-first")
        await session.reply("second")

        child = await session.fork({"at": snapshot_id})

        assert [m.text for m in child.messages] == ["first", "one"]
        assert await memory_store.load_messages(child.session_id) == child.messages
        forked = next(e for e in session.history() if e.type == "forked")
        assert forked["child_session_id"] == child.session_id
        await child.close()

    @pytest.mark.asyncio
    async def test_fork_missing_snapshot(self, make_session):
        from turnloop.errors import ResumeError, ResumeErrorCode

        session = await make_session()

        with pytest.raises(ResumeError) as exc_info:
            await session.fork("sfp:99")
        assert exc_info.value.code is ResumeErrorCode.SNAPSHOT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_default_snapshot_id(self, make_session, provider):
        provider.add(text_response("ok"))
        session = await make_session()
        await session.reply("hi")

        assert await session.snapshot() == "sfp:1"


# =============================================================================
# Extensions
# =============================================================================


class TestExtensions:
    """Tests for todos, scheduling, delegation and custom events."""

    @pytest.mark.asyncio
    async def test_todos_emit_changes(self, make_session):
        session = await make_session()

        await session.set_todos([{"id": "1", "title": "Write tests"}])
        await session.update_todo({"id": "1", "status": "in_progress"})

        changes = [e for e in session.history() if e.type == "todo_changed"]
        assert len(changes) == 2
        assert changes[1]["previous"][0]["status"] == "pending"
        assert changes[1]["current"][0]["status"] == "in_progress"
        assert session.todos()[0].status == "in_progress"

    @pytest.mark.asyncio
    async def test_schedule_fires_on_steps(self, make_session, provider):
        provider.add(text_response("a"), text_response("b"))
        session = await make_session()
        fired = []
        session.schedule().every_steps(2, lambda ctx: fired.append(ctx["step_count"]))

        await session.reply("one")
        await session.reply("two")

        assert fired == [2]
        triggered = [e for e in session.history() if e.type == "scheduler_triggered"]
        assert triggered[0]["spec"] == "steps:2"

    @pytest.mark.asyncio
    async def test_tool_can_delegate_and_emit(self, make_session, provider):
        @tool
        async def helper(ctx) -> str:
            ctx.emit("note", pct=50)
            return await ctx.delegate("summarise")

        provider.add(tool_response(("t1", "helper", {})), text_response("child says hi"), text_response("done"))
        session = await make_session(tools=[helper])

        await session.send("go")
        await session.wait_idle()

        assert session.messages[2].tool_results[0].content == "child says hi"
        custom = next(e for e in session.history() if e.type == "custom")
        assert custom["name"] == "note"
        assert custom["data"] == {"pct": 50}
        assert custom["call_id"] == "t1"

    @pytest.mark.asyncio
    async def test_ask_llm_does_not_touch_history(self, make_session, provider):
        provider.add(text_response("42"))
        session = await make_session()

        assert await session.ask_llm("meaning of life?") == "42"
        assert session.messages == []

    @pytest.mark.asyncio
    async def test_streaming_emits_chunks(self, make_session, memory_store):
        from turnloop.core.llm.provider import StreamChunk

        class StreamingProvider(ScriptedProvider):
            async def stream(self, messages, **kwargs):
                for piece in ("Hel", "lo"):
                    yield StreamChunk(text=piece)
                yield StreamChunk(is_final=True, finish_reason="stop")

        from turnloop.session.session import Session

        session = Session("streamed", StreamingProvider(), memory_store, None, options=SessionOptions(stream=True))
        await session.send("hi")
        await session.wait_idle()

        chunks = [e["delta"] for e in session.history() if e.type == "text_chunk"]
        assert chunks == ["Hel", "lo"]
        assert session.messages[-1].content == (TextBlock("Hello"),)
        await session.close()


# =============================================================================
# Status
# =============================================================================


class TestStatus:
    """Tests for status() and info()."""

    @pytest.mark.asyncio
    async def test_status_fields(self, make_session, provider):
        provider.add(text_response("ok"))
        session = await make_session()
        await session.reply("hi")

        status = session.status()
        assert status.state is SessionState.READY
        assert status.message_count == 2
        assert status.step_count == 1
        assert status.cursor == session.events.cursor
        assert status.failed_events == 0

    @pytest.mark.asyncio
    async def test_info_records_options_and_modes(self, make_session):
        session = await make_session(options=SessionOptions(system="be brief", max_tokens=100))

        info = session.info()
        assert info.options["system"] == "be brief"
        assert info.options["max_tokens"] == 100
        assert {"name": "auto", "built_in": True} in info.permission_modes

    @pytest.mark.asyncio
    async def test_messages_is_a_copy(self, make_session):
        session = await make_session()
        session.messages.append(Message(Role.USER, (TextBlock("sneaky"),)))

        assert session.messages == []

    @pytest.mark.asyncio
    async def test_pending_tool_use_detected(self, make_session):
        session = await make_session()
        session._messages = [
            Message.user_text("go"),
            Message(Role.ASSISTANT, (ToolUseBlock("t1", "ls", {}),)),
        ]

        assert [u.id for u in session._pending_tool_uses()] == ["t1"]
