"""
Shared fixtures for the voxagent test suite.

Provides a scripted provider, a clean environment (no VOXAGENT_* or API key
variables leaking in from the developer's shell), and an Agent wired to the
scripted provider so individual modules can focus on behavior.
"""

from __future__ import annotations

import os
from typing import Optional

import pytest

from voxagent.tools.registry import ToolDefinition
from voxagent.types import ChatMessage, LlmResponse, ToolCall


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("VOXAGENT_") or key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY"):
            monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider:
    """
    Returns pre-scripted LlmResponses in order and records every call.

    Once the script runs out it answers with ``fallback`` text, or keeps
    requesting ``repeat_tool`` forever when that is set.
    """

    name = "scripted"

    def __init__(
        self,
        responses: Optional[list[LlmResponse]] = None,
        fallback: str = "fallback",
        repeat_tool: Optional[str] = None,
        error: Optional[Exception] = None,
    ):
        self.responses = list(responses or [])
        self.fallback = fallback
        self.repeat_tool = repeat_tool
        self.error = error
        self.calls: list[tuple[list[ChatMessage], list[ToolDefinition]]] = []
        self.closed = False

    def chat_with_tools(self, messages, tools) -> LlmResponse:
        self.calls.append((list(messages), list(tools)))
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        if self.repeat_tool:
            n = len(self.calls)
            return LlmResponse(tool_calls=[ToolCall(id=f"call_{n}", name=self.repeat_tool, arguments={})])
        return LlmResponse(content=self.fallback)

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def scripted():
    return ScriptedProvider


@pytest.fixture()
def agent_factory(tmp_path):
    """Build Agents on a scripted provider; every agent is closed at teardown."""
    from voxagent.agent import Agent
    from voxagent.config import AgentConfig

    created = []

    def _make(provider=None, **overrides):
        settings = {
            "base_url": "http://llm.test/v1",
            "working_dir": str(tmp_path),
            "use_harmony_template": False,
            "watcher_debounce_ms": 50,
        }
        settings.update(overrides)
        agent = Agent(AgentConfig(**settings), provider=provider or ScriptedProvider())
        created.append(agent)
        return agent

    yield _make
    for agent in created:
        agent.close()
