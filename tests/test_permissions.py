"""Tests for the static permission policy and the hook pipeline."""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from turnloop.config.schema import PermissionConfig
from turnloop.core.types import ToolCall, ToolOutcome
from turnloop.session.hooks import Allow, Ask, Deny, HookManager, Hooks, Replace, Result, Update
from turnloop.session.permissions import PermissionEvaluator, PermissionModeRegistry
from turnloop.tools.base import ToolDescriptor


def descriptor(name: str, **metadata) -> ToolDescriptor:
    return ToolDescriptor(name=name, description="", input_schema={"type": "object"}, metadata=metadata)


DESCRIPTORS = {
    "ls": descriptor("ls", mutates=False),
    "write": descriptor("write", mutates=True),
    "deploy": descriptor("deploy", access="Execute"),
    "mystery": descriptor("mystery"),
}


def evaluator(**config) -> PermissionEvaluator:
    return PermissionEvaluator(PermissionConfig(**config), DESCRIPTORS, PermissionModeRegistry())


# =============================================================================
# PermissionEvaluator
# =============================================================================


class TestPermissionEvaluator:
    """Tests for evaluation order and built-in modes."""

    def test_auto_allows(self):
        assert evaluator().evaluate("write") == "allow"

    def test_approval_asks(self):
        assert evaluator(mode="approval").evaluate("ls") == "ask"

    @pytest.mark.parametrize(
        "tool_name,expected",
        [("ls", "allow"), ("write", "deny"), ("deploy", "deny"), ("mystery", "ask"), ("unknown", "ask")],
    )
    def test_readonly_mode(self, tool_name, expected):
        assert evaluator(mode="readonly").evaluate(tool_name) == expected

    def test_deny_list_beats_everything(self):
        ev = evaluator(allow_tools=["ls"], deny_tools=["ls"], require_approval_tools=["ls"])
        assert ev.evaluate("ls") == "deny"

    def test_allow_list_denies_missing_tools(self):
        ev = evaluator(allow_tools=["ls"])
        assert ev.evaluate("ls") == "allow"
        assert ev.evaluate("write") == "deny"

    def test_empty_allow_list_is_no_allow_list(self):
        assert evaluator(allow_tools=[]).evaluate("write") == "allow"

    def test_require_approval_before_mode(self):
        assert evaluator(require_approval_tools=["ls"]).evaluate("ls") == "ask"

    def test_unknown_mode_falls_back_to_auto(self):
        assert evaluator(mode="no-such-mode").evaluate("write") == "allow"

    def test_custom_mode(self):
        registry = PermissionModeRegistry()
        seen = []

        def business_hours(ctx):
            seen.append((ctx.tool_name, ctx.descriptor.metadata.get("mutates")))
            return "ask" if ctx.tool_name == "write" else "allow"

        registry.register("business-hours", business_hours)
        ev = PermissionEvaluator(PermissionConfig(mode="business-hours"), DESCRIPTORS, registry)

        assert ev.evaluate("write") == "ask"
        assert ev.evaluate("ls") == "allow"
        assert seen == [("write", True), ("ls", False)]

    def test_config_changes_apply_immediately(self):
        ev = evaluator()
        ev.config.deny_tools.append("ls")
        assert ev.evaluate("ls") == "deny"


class TestPermissionModeRegistry:
    """Tests for mode serialization and restore checks."""

    def test_builtins(self):
        assert PermissionModeRegistry().list() == ["auto", "approval", "readonly"]

    def test_serialize_marks_custom_modes(self):
        registry = PermissionModeRegistry()
        registry.register("night-shift", lambda ctx: "deny")

        serialized = {e["name"]: e["built_in"] for e in registry.serialize()}

        assert serialized == {"auto": True, "approval": True, "readonly": True, "night-shift": False}

    def test_validate_restore_reports_missing_custom_modes(self):
        source = PermissionModeRegistry()
        source.register("night-shift", lambda ctx: "deny")
        target = PermissionModeRegistry()

        assert target.validate_restore(source.serialize()) == ["night-shift"]

        target.register("night-shift", lambda ctx: "deny")
        assert target.validate_restore(source.serialize()) == []

    def test_unregister(self):
        registry = PermissionModeRegistry()
        registry.register("temp", lambda ctx: "allow")
        registry.unregister("temp")

        assert registry.get("temp") is None
        assert registry.validate_restore([{"name": "temp", "built_in": False}]) == ["temp"]


# =============================================================================
# HookManager
# =============================================================================


def make_call(name: str = "ls") -> ToolCall:
    return ToolCall(id="t1", name=name, args={"path": "."}, session_id="s1")


class TestPreToolUse:
    """Tests for the pre_tool_use pipeline."""

    @pytest.mark.asyncio
    async def test_no_hooks_means_no_decision(self):
        assert await HookManager().run_pre_tool_use(make_call(), Mock()) is None

    @pytest.mark.asyncio
    async def test_first_decision_wins(self):
        manager = HookManager()
        later = Mock(return_value=Deny("too late"))
        manager.register(Hooks(pre_tool_use=lambda call, ctx: None))
        manager.register(Hooks(pre_tool_use=lambda call, ctx: Result(["cached"])))
        manager.register(Hooks(pre_tool_use=later))

        decision = await manager.run_pre_tool_use(make_call(), Mock())

        assert decision == Result(["cached"])
        later.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_hooks_and_dict_hook_sets(self):
        manager = HookManager()

        async def gate(call, ctx):
            return Ask(meta={"why": call.name})

        manager.register({"pre_tool_use": gate})

        assert await manager.run_pre_tool_use(make_call("write"), Mock()) == Ask(meta={"why": "write"})

    @pytest.mark.asyncio
    async def test_allow_short_circuits(self):
        manager = HookManager()
        later = Mock(return_value=Deny())
        manager.register(Hooks(pre_tool_use=lambda call, ctx: Allow()))
        manager.register(Hooks(pre_tool_use=later))

        assert await manager.run_pre_tool_use(make_call(), Mock()) == Allow()
        later.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_decision_rejected(self):
        manager = HookManager()
        manager.register(Hooks(pre_tool_use=lambda call, ctx: "deny"))

        with pytest.raises(TypeError, match="expected a decision"):
            await manager.run_pre_tool_use(make_call(), Mock())


class TestPostToolUse:
    """Tests for the post_tool_use pipeline."""

    @pytest.mark.asyncio
    async def test_updates_chain(self):
        manager = HookManager()
        seen = []

        def redact(outcome, ctx):
            seen.append(outcome.content)
            return Update({"content": "[redacted]"})

        def tag(outcome, ctx):
            seen.append(outcome.content)
            return Update({"duration_ms": 1.0})

        manager.register(Hooks(post_tool_use=redact))
        manager.register(Hooks(post_tool_use=tag))
        outcome = ToolOutcome(id="t1", name="ls", ok=True, content="secret")

        result = await manager.run_post_tool_use(outcome, Mock())

        assert seen == ["secret", "[redacted]"]
        assert result.content == "[redacted]"
        assert result.duration_ms == 1.0
        assert outcome.content == "secret"

    @pytest.mark.asyncio
    async def test_replace(self):
        manager = HookManager()
        replacement = ToolOutcome(id="t1", name="ls", ok=False, content={"error": "nope"})
        manager.register(Hooks(post_tool_use=lambda outcome, ctx: Replace(replacement)))

        result = await manager.run_post_tool_use(ToolOutcome("t1", "ls", True, "ok"), Mock())

        assert result is replacement


class TestHookRegistry:
    """Tests for registration bookkeeping."""

    def test_registered_reports_origin_and_names(self):
        manager = HookManager()
        tool_hooks = Hooks(pre_tool_use=lambda call, ctx: None)
        manager.register(Hooks(pre_model=lambda request: None, post_model=lambda response: None))
        manager.register(tool_hooks, origin="tool")

        registered = manager.registered()

        assert [(r.origin, r.names) for r in registered] == [
            ("session", ("pre_model", "post_model")),
            ("tool", ("pre_tool_use",)),
        ]
        assert manager.hook_sets("tool") == [tool_hooks]

    def test_unregister(self):
        manager = HookManager()
        hooks = Hooks()
        manager.register(hooks)

        assert manager.unregister(hooks) is True
        assert manager.unregister(hooks) is False
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_model_and_messages_hooks(self):
        manager = HookManager()
        calls = []
        manager.register(
            Hooks(
                pre_model=lambda request: calls.append(("pre", request["model"])),
                post_model=lambda response: calls.append(("post", response)),
                messages_changed=lambda snapshot: calls.append(("changed", snapshot["message_count"])),
            )
        )

        await manager.run_pre_model({"model": "m"})
        await manager.run_post_model("response")
        await manager.run_messages_changed({"message_count": 3})

        assert calls == [("pre", "m"), ("post", "response"), ("changed", 3)]
