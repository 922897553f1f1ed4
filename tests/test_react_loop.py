"""
Tests for voxagent.harness.loop.ReactLoop.

Uses the scripted provider from conftest so each test states exactly what the
model "says" at every iteration.
"""

from __future__ import annotations

import pytest

from voxagent.errors import LoopExhausted, ProviderError
from voxagent.harness.loop import EXHAUSTED_FALLBACK, ReactLoop
from voxagent.tools.builtin import register_builtin_tools
from voxagent.tools.registry import ToolDefinition, ToolRegistry
from voxagent.types import ChatMessage, ChatRole, LlmResponse, TokenUsage, ToolCall


def _echo_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolDefinition(
            name="echo",
            description="Echo the text back",
            input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
            handler=lambda text="": f"echo: {text}",
        )
    )
    return registry


def _calls(*names: str, start: int = 1) -> list[ToolCall]:
    return [ToolCall(id=f"call_{start + i}", name=name, arguments={}) for i, name in enumerate(names)]


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------

def test_direct_answer_completes_in_one_iteration(scripted):
    provider = scripted([LlmResponse(content="4", usage=TokenUsage(12, 1))])
    loop = ReactLoop(provider)

    result = loop.run([ChatMessage.user("What is 2+2?")], ToolRegistry())

    assert result.text == "4"
    assert result.iterations == 1
    assert result.exhausted is False
    assert result.used_tools is False
    assert result.usage.total_tokens == 13
    assert len(provider.calls) == 1


def test_tool_call_then_answer(scripted):
    provider = scripted([
        LlmResponse(tool_calls=[ToolCall(id="call_1", name="echo", arguments={"text": "hi"})]),
        LlmResponse(content="The tool said hi."),
    ])
    loop = ReactLoop(provider)

    result = loop.run([ChatMessage.user("say hi")], _echo_registry())

    assert result.text == "The tool said hi."
    assert result.iterations == 2
    assert result.tool_names_used == ["echo"]
    second_call_messages = provider.calls[1][0]
    assert second_call_messages[-1].role == ChatRole.TOOL
    assert second_call_messages[-1].content == "echo: hi"
    assert second_call_messages[-1].tool_call_id == "call_1"


def test_loop_exhaustion_returns_flagged_result(scripted):
    provider = scripted(repeat_tool="echo")
    loop = ReactLoop(provider, max_iterations=10)

    result = loop.run([ChatMessage.user("keep going")], _echo_registry())

    assert result.exhausted is True
    assert result.iterations == 10
    assert len(provider.calls) == 10
    assert result.text == EXHAUSTED_FALLBACK
    with pytest.raises(LoopExhausted):
        result.raise_if_exhausted()


def test_fifteen_tool_calls_with_cap_of_ten(scripted):
    responses = [LlmResponse(tool_calls=_calls("echo", start=i)) for i in range(15)]
    provider = scripted(responses)

    result = ReactLoop(provider, max_iterations=10).run([ChatMessage.user("go")], _echo_registry())

    assert result.exhausted is True
    assert len(result.tool_calls) == 10
    assert len(provider.responses) == 5


def test_exhaustion_keeps_last_partial_content(scripted):
    provider = scripted([
        LlmResponse(content="Checking the logs", tool_calls=_calls("echo")),
        LlmResponse(content="", tool_calls=_calls("echo", start=2)),
    ])

    result = ReactLoop(provider, max_iterations=2).run([ChatMessage.user("go")], _echo_registry())

    assert result.exhausted is True
    assert result.text == "Checking the logs"


def test_per_run_iteration_override(scripted):
    provider = scripted(repeat_tool="echo")
    result = ReactLoop(provider, max_iterations=10).run([ChatMessage.user("go")], _echo_registry(), max_iterations=3)
    assert result.iterations == 3


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------

def test_missing_file_read_becomes_observation(scripted, tmp_path):
    registry = ToolRegistry()
    register_builtin_tools(registry, tmp_path)
    provider = scripted([
        LlmResponse(tool_calls=[ToolCall(id="call_1", name="read", arguments={"file_path": "/nonexistent/x.txt"})]),
        LlmResponse(content="That file doesn't exist."),
    ])

    result = ReactLoop(provider).run([ChatMessage.user("read it")], registry)

    assert result.text == "That file doesn't exist."
    observation = provider.calls[1][0][-1]
    assert observation.role == ChatRole.TOOL
    assert observation.content.startswith("Error executing tool 'read':")


def test_unknown_tool_becomes_observation(scripted):
    provider = scripted([
        LlmResponse(tool_calls=_calls("does_not_exist")),
        LlmResponse(content="Sorry, I can't do that."),
    ])

    result = ReactLoop(provider).run([ChatMessage.user("x")], ToolRegistry())

    assert result.text == "Sorry, I can't do that."
    assert "Unknown tool: does_not_exist" in provider.calls[1][0][-1].content


def test_every_call_has_a_paired_result_in_order(scripted):
    provider = scripted([
        LlmResponse(content="Doing two things", tool_calls=_calls("echo", "missing", "echo")),
        LlmResponse(content="done"),
    ])

    result = ReactLoop(provider).run([ChatMessage.user("x")], _echo_registry())

    messages = result.messages
    assistant_index = next(i for i, m in enumerate(messages) if m.tool_calls)
    assistant = messages[assistant_index]
    results = messages[assistant_index + 1: assistant_index + 4]
    assert assistant.content == "Doing two things"
    assert [m.tool_call_id for m in results] == [c.id for c in assistant.tool_calls]
    assert all(m.role == ChatRole.TOOL for m in results)
    assert messages[-1] == ChatMessage.assistant("done")


def test_input_messages_are_not_mutated(scripted):
    messages = [ChatMessage.user("say hi")]
    provider = scripted([LlmResponse(tool_calls=_calls("echo")), LlmResponse(content="ok")])

    ReactLoop(provider).run(messages, _echo_registry())

    assert messages == [ChatMessage.user("say hi")]


def test_tool_set_is_snapshotted_per_run(scripted):
    registry = _echo_registry()

    def register_late(**_):
        registry.register(
            ToolDefinition(name="late", description="late", input_schema={"type": "object"}, handler=lambda: "")
        )
        return "registered"

    registry.register(
        ToolDefinition(name="adder", description="adds a tool", input_schema={"type": "object"}, handler=register_late)
    )
    provider = scripted([LlmResponse(tool_calls=_calls("adder")), LlmResponse(content="ok")])

    ReactLoop(provider).run([ChatMessage.user("x")], registry)

    first_names = sorted(t.name for t in provider.calls[0][1])
    second_names = sorted(t.name for t in provider.calls[1][1])
    assert first_names == second_names == ["adder", "echo"]


# ---------------------------------------------------------------------------
# Provider failures and harmony output
# ---------------------------------------------------------------------------

def test_provider_error_propagates(scripted):
    provider = scripted(error=ProviderError("connection refused"))
    with pytest.raises(ProviderError, match="connection refused"):
        ReactLoop(provider).run([ChatMessage.user("x")], ToolRegistry())


def test_unexpected_provider_exception_is_wrapped(scripted):
    provider = scripted(error=KeyError("choices"))
    with pytest.raises(ProviderError, match="KeyError"):
        ReactLoop(provider).run([ChatMessage.user("x")], ToolRegistry())


def test_harmony_output_is_split(scripted):
    raw = "<|channel|>analysis<|message|>Simple sum.<|end|><|start|>assistant<|channel|>final<|message|>4<|return|>"
    provider = scripted([LlmResponse(content=raw)])

    result = ReactLoop(provider, harmony_output=True).run([ChatMessage.user("2+2?")], ToolRegistry())

    assert result.text == "4"
    assert result.reasoning == "Simple sum."


def test_stats_accumulate(scripted):
    provider = scripted([LlmResponse(tool_calls=_calls("echo")), LlmResponse(content="ok")])
    loop = ReactLoop(provider)
    loop.run([ChatMessage.user("x")], _echo_registry())

    assert loop.stats["total_runs"] == 1
    assert loop.stats["total_iterations"] == 2
    assert loop.stats["total_tool_calls"] == 1


# ---------------------------------------------------------------------------
# Structured replies
# ---------------------------------------------------------------------------

class _SchemaProvider:
    name = "schema"
    supports_structured_output = True

    def __init__(self, content="", error=None):
        self.content = content
        self.error = error
        self.calls = []

    def chat_with_schema(self, messages, schema, schema_name):
        self.calls.append((messages, schema, schema_name))
        if self.error is not None:
            raise self.error
        return LlmResponse(content=self.content, usage=TokenUsage(5, 2))


def test_respond_structured_makes_one_call_without_tools():
    provider = _SchemaProvider('{"response": "ok", "keywords": []}')
    loop = ReactLoop(provider)
    messages = [ChatMessage.user("hi")]

    result = loop.respond_structured(messages, {"type": "object"}, "conversation_response")

    assert result.text == '{"response": "ok", "keywords": []}'
    assert result.iterations == 1
    assert result.used_tools is False
    assert result.usage.total_tokens == 7
    assert provider.calls[0][2] == "conversation_response"
    assert provider.calls[0][0] is not messages
    assert loop.stats["total_runs"] == 1


def test_respond_structured_splits_harmony_output():
    raw = "<|channel|>analysis<|message|>Greet.<|end|><|start|>assistant<|channel|>final<|message|>{\"response\": \"hey\"}<|return|>"
    loop = ReactLoop(_SchemaProvider(raw), harmony_output=True)

    result = loop.respond_structured([ChatMessage.user("hi")], {"type": "object"}, "conversation_response")

    assert result.text == '{"response": "hey"}'
    assert result.reasoning == "Greet."


def test_respond_structured_wraps_unexpected_errors():
    loop = ReactLoop(_SchemaProvider(error=KeyError("output")))
    with pytest.raises(ProviderError, match="KeyError"):
        loop.respond_structured([ChatMessage.user("hi")], {"type": "object"}, "conversation_response")


def test_base_provider_has_no_structured_output():
    from voxagent.providers.base import LlmProvider

    class Plain(LlmProvider):
        name = "plain"

        def chat_with_tools(self, messages, tools):
            return LlmResponse(content="x")

    provider = Plain()
    assert provider.supports_structured_output is False
    with pytest.raises(ProviderError, match="does not support structured output"):
        provider.chat_with_schema([ChatMessage.user("hi")], {"type": "object"}, "conversation_response")
