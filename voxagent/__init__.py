"""
Voxagent: Agent Runtime for a Voice-Driven Assistant.

This package is the core behind a thin speech/UI shell: a provider-agnostic
ReAct loop that drives either an in-process local model (grammar-constrained
decoding) or a remote HTTP API (native tool calling) to completion, while
keeping a token-bounded conversation state, a thread-safe tool/skill catalog,
and a bridge to child-process MCP tool servers.

Layers (bottom to top):
    1. Tools (registry, built-ins, skills, MCP bridge)
    2. Providers (local llama.cpp, OpenAI Responses, Anthropic, Harmony)
    3. Harness (ReAct loop, retries)
    4. Memory (conversation, state capsule, rule-based updater, situation)
    5. Agent facade (the entry points the shell calls)
"""

__version__ = "0.1.0"

from voxagent.agent import Agent  # noqa: E402
from voxagent.config import AgentConfig  # noqa: E402

__all__ = ["Agent", "AgentConfig", "__version__"]
