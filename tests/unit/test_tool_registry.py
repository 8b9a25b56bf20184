"""Unit tests for the tool registry, tool execution and periodic sweeps."""

from __future__ import annotations

import asyncio

import pytest

from chatengine.config import ToolRegistryConfig
from chatengine.errors import ArgumentValidationError
from chatengine.errors import ErrorPolicy
from chatengine.errors import ToolExecutionError
from chatengine.tasks import PeriodicTask
from chatengine.tools import Tool
from chatengine.tools import ToolRegistry


class _Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_tool(name: str = "echo", *, fail: bool = False, policy=ErrorPolicy.degrade) -> Tool:
    async def execute(args, context):
        if fail:
            raise RuntimeError("upstream 503")
        return f"echo:{args.get('text', '')}"

    return Tool(
        name=name,
        description="Echo the input text.",
        parameters={"type": "object", "properties": {"text": {"type": "string"}}},
        execute=execute,
        error_policy=policy,
    )


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------


class TestTool:
    async def test_run_returns_result(self, context):
        assert await _make_tool().run({"text": "hi"}, context) == "echo:hi"

    async def test_degrade_returns_error_text(self, context):
        result = await _make_tool(fail=True).run({}, context)
        assert result == "Error executing echo: upstream 503"

    async def test_strict_raises(self, context):
        tool = _make_tool(fail=True, policy=ErrorPolicy.strict)
        with pytest.raises(ToolExecutionError) as exc_info:
            await tool.run({}, context)
        assert exc_info.value.tool_name == "echo"

    def test_openai_schema(self):
        schema = _make_tool().to_openai_schema()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "echo"
        assert schema["function"]["parameters"]["type"] == "object"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def test_static_registration(self):
        registry = ToolRegistry()
        tool = _make_tool()
        registry.register_static("echo", tool)

        assert "echo" in registry
        assert len(registry) == 1
        assert registry.resolve(["echo"]) == {"echo": tool}

    def test_empty_name_rejected(self):
        registry = ToolRegistry()
        with pytest.raises(ArgumentValidationError):
            registry.register_static("", _make_tool())
        with pytest.raises(ArgumentValidationError):
            registry.register_dynamic("chat-1", "", _make_tool())

    def test_resolve_skips_unknown(self):
        registry = ToolRegistry()
        registry.register_static("echo", _make_tool())
        assert list(registry.resolve(["missing", "echo"])) == ["echo"]
        assert registry.resolve([]) == {}

    def test_dynamic_names_per_conversation(self):
        registry = ToolRegistry()
        registry.register_static("echo", _make_tool())
        registry.register_dynamic("chat-1", "kb_1", _make_tool("kb_1"))
        registry.register_dynamic("chat-2", "kb_2", _make_tool("kb_2"))

        assert registry.dynamic_names("chat-1") == ["kb_1"]
        assert registry.dynamic_names("chat-3") == []

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register_dynamic("chat-1", "kb_1", _make_tool("kb_1"))

        assert registry.unregister("kb_1", "chat-2") is False
        assert registry.unregister("kb_1", "chat-1") is True
        assert registry.unregister("kb_1") is False
        assert "kb_1" not in registry


class TestDynamicExpiry:
    def test_tool_resolvable_within_ttl(self):
        clock = _Clock()
        registry = ToolRegistry(clock=clock)
        registry.register_dynamic("chat-1", "kb_1", _make_tool("kb_1"))

        clock.now = 30 * 60
        assert registry.sweep_expired() == []
        assert "kb_1" in registry.resolve(["kb_1"])

    def test_sweep_removes_expired_dynamic_tools(self):
        clock = _Clock()
        registry = ToolRegistry(clock=clock)
        registry.register_static("echo", _make_tool())
        registry.register_dynamic("chat-1", "kb_1", _make_tool("kb_1"))

        clock.now = 61 * 60
        assert registry.sweep_expired() == ["kb_1"]
        assert registry.resolve(["kb_1", "echo"]).keys() == {"echo"}

    def test_custom_ttl(self):
        clock = _Clock()
        registry = ToolRegistry(ToolRegistryConfig(dynamic_tool_ttl_seconds=10), clock=clock)
        registry.register_dynamic("chat-1", "kb_1", _make_tool("kb_1"))
        clock.now = 11
        assert registry.sweep_expired() == ["kb_1"]

    async def test_background_sweep(self):
        clock = _Clock()
        registry = ToolRegistry(
            ToolRegistryConfig(dynamic_tool_ttl_seconds=1, sweep_interval_seconds=0.01),
            clock=clock,
        )
        registry.register_dynamic("chat-1", "kb_1", _make_tool("kb_1"))
        clock.now = 5

        registry.start()
        try:
            for _ in range(100):
                if "kb_1" not in registry:
                    break
                await asyncio.sleep(0.01)
        finally:
            await registry.stop()

        assert "kb_1" not in registry


# ---------------------------------------------------------------------------
# PeriodicTask
# ---------------------------------------------------------------------------


class TestPeriodicTask:
    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: asyncio.sleep(0))

    async def test_failures_do_not_stop_the_loop(self):
        calls: list[int] = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")

        task = PeriodicTask("flaky", 0.01, flaky)
        task.start()
        assert task.running
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await task.stop()

        assert len(calls) >= 2
        assert task.running is False

    async def test_stop_without_start(self):
        await PeriodicTask("idle", 1.0, lambda: asyncio.sleep(0)).stop()
