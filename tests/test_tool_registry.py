"""
Tests for voxagent.tools.registry.ToolRegistry.
"""

from __future__ import annotations

import threading
import time

import pytest

from voxagent.errors import DuplicateTool, ExecutionFailed, ToolNotFound
from voxagent.tools.registry import ReadWriteLock, ToolDefinition, ToolRegistry, serialize_tool_output


def _tool(name: str, handler=None, owner: str = "builtin", schema=None, **kwargs) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=f"{name} tool",
        input_schema=schema or {"type": "object", "properties": {}},
        handler=handler,
        owner=owner,
        **kwargs,
    )


def test_register_rejects_duplicate_names():
    registry = ToolRegistry()
    registry.register(_tool("search", handler=lambda: "first"))

    with pytest.raises(DuplicateTool) as exc_info:
        registry.register(_tool("search", handler=lambda: "second"))

    assert exc_info.value.tool_name == "search"
    assert registry.call("search") == "first"
    assert registry.count == 1


def test_call_unknown_tool_raises_not_found():
    registry = ToolRegistry()
    with pytest.raises(ToolNotFound):
        registry.call("nope", {})


def test_call_disabled_tool_raises_not_found():
    registry = ToolRegistry()
    registry.register(_tool("hidden", handler=lambda: "x", enabled=False))

    with pytest.raises(ToolNotFound):
        registry.call("hidden")
    assert registry.get_definitions() == []


def test_handler_exception_becomes_execution_failed():
    def boom():
        raise RuntimeError("disk on fire")

    registry = ToolRegistry()
    registry.register(_tool("boom", handler=boom))

    with pytest.raises(ExecutionFailed, match="disk on fire"):
        registry.call("boom")


def test_missing_required_argument_is_rejected_before_handler_runs():
    calls = []
    schema = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }
    registry = ToolRegistry()
    registry.register(_tool("read", handler=lambda path: calls.append(path), schema=schema))

    with pytest.raises(ExecutionFailed, match="Missing required parameter"):
        registry.call("read", {})
    assert calls == []


def test_boolean_is_not_accepted_as_integer():
    schema = {"type": "object", "properties": {"n": {"type": "integer"}}}
    registry = ToolRegistry()
    registry.register(_tool("count", handler=lambda n: n, schema=schema))

    with pytest.raises(ExecutionFailed, match="boolean"):
        registry.call("count", {"n": True})
    assert registry.call("count", {"n": 3}) == "3"


def test_non_string_results_are_serialized():
    assert serialize_tool_output({"a": 1}) == '{"a": 1}'
    assert serialize_tool_output(None) == "null"
    long_text = serialize_tool_output("x" * 30000)
    assert "truncated" in long_text
    assert len(long_text) < 30000


def test_get_definitions_is_a_snapshot():
    registry = ToolRegistry()
    registry.register(_tool("a", handler=lambda: "a"))

    snapshot = registry.get_definitions()
    registry.register(_tool("b", handler=lambda: "b"))
    snapshot[0].input_schema["injected"] = True

    assert [tool.name for tool in snapshot] == ["a"]
    assert "injected" not in registry.get("a").input_schema


def test_describe_overrides_description_when_it_returns_text():
    state = {"text": None}
    registry = ToolRegistry()
    registry.register(_tool("live", handler=lambda: "", describe=lambda: state["text"]))

    assert registry.get_definitions()[0].description == "live tool"
    state["text"] = "3 new messages"
    assert registry.get_definitions()[0].description == "3 new messages"


def test_api_format_has_name_description_and_schema():
    tool = _tool("read", schema={"type": "object", "properties": {"path": {"type": "string"}}})
    assert tool.to_api_format() == {
        "name": "read",
        "description": "read tool",
        "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}},
    }


def test_replace_owner_swaps_tools_atomically():
    registry = ToolRegistry()
    registry.register(_tool("mcp_fs_read", owner="mcp:fs"))
    registry.register(_tool("mcp_fs_write", owner="mcp:fs"))
    registry.register(_tool("shell"))

    removed = registry.replace_owner("mcp:fs", [_tool("mcp_fs_list")])

    assert sorted(removed) == ["mcp_fs_read", "mcp_fs_write"]
    assert sorted(registry.names()) == ["mcp_fs_list", "shell"]
    assert registry.get("mcp_fs_list").owner == "mcp:fs"


def test_replace_owner_collision_with_other_owner_leaves_registry_untouched():
    registry = ToolRegistry()
    registry.register(_tool("mcp_fs_read", owner="mcp:fs"))
    registry.register(_tool("shell"))

    with pytest.raises(DuplicateTool):
        registry.replace_owner("mcp:fs", [_tool("shell")])

    assert sorted(registry.names()) == ["mcp_fs_read", "shell"]


def test_unregister_owner_removes_only_that_owner():
    registry = ToolRegistry()
    registry.register(_tool("x", owner="mcp:one"))
    registry.register(_tool("y", owner="mcp:two"))

    assert registry.unregister_owner("mcp:one") == ["x"]
    assert registry.names() == ["y"]
    assert registry.unregister("y") is True
    assert registry.unregister("y") is False
    assert registry.is_empty()


def test_filtered_registry_hides_and_blocks_other_tools():
    registry = ToolRegistry()
    registry.register(_tool("read", handler=lambda: "read ok"))
    registry.register(_tool("shell", handler=lambda: "shell ok"))

    view = registry.filtered(["read"])

    assert [tool.name for tool in view.get_definitions()] == ["read"]
    assert view.call("read") == "read ok"
    with pytest.raises(ToolNotFound):
        view.call("shell")
    assert registry.filtered([]).is_empty()


def test_readers_share_the_lock_while_a_writer_waits():
    lock = ReadWriteLock()
    both_reading = threading.Barrier(2, timeout=2.0)
    release = threading.Event()
    order = []

    def reader(tag):
        with lock.read():
            both_reading.wait()
            order.append(f"{tag} reading")
            release.wait(2.0)
            order.append(f"{tag} done")

    def writer():
        with lock.write():
            order.append("writer")

    readers = [threading.Thread(target=reader, args=(tag,)) for tag in ("r1", "r2")]
    for thread in readers:
        thread.start()
    while len(order) < 2:
        time.sleep(0.01)
    writing = threading.Thread(target=writer)
    writing.start()
    time.sleep(0.1)

    assert "writer" not in order
    release.set()
    for thread in readers + [writing]:
        thread.join(timeout=2.0)

    assert order[-1] == "writer"
    assert sorted(order[:2]) == ["r1 reading", "r2 reading"]


def test_slow_calls_run_concurrently_without_blocking_registration():
    registry = ToolRegistry()
    both_running = threading.Barrier(3, timeout=2.0)
    release = threading.Event()

    def slow(tag):
        both_running.wait()
        release.wait(2.0)
        return tag

    registry.register(_tool("slow", handler=slow, schema={"type": "object", "properties": {"tag": {"type": "string"}}}))
    results = []
    callers = [threading.Thread(target=lambda t=t: results.append(registry.call("slow", {"tag": t}))) for t in ("a", "b")]
    for thread in callers:
        thread.start()
    both_running.wait()

    registry.register(_tool("late"))
    assert "late" in registry.names()
    assert results == []

    release.set()
    for thread in callers:
        thread.join(timeout=2.0)
    assert sorted(results) == ["a", "b"]
