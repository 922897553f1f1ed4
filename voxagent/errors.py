"""
Error taxonomy for the agent runtime.

Anything the model can re-observe (tool failures) stays inside the ReAct loop
as an observation string.  Anything that breaks the provider contract itself
(network, auth, malformed schema) aborts the turn and is raised to the caller.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for every error raised by the runtime."""


class ConfigError(AgentError):
    """Fatal at construction: bad provider selection or malformed model artifact."""


class ProviderError(AgentError):
    """Network or parse failure while talking to the model. Aborts the turn."""


class ToolError(AgentError):
    """A tool invocation failed. Recovered inside the loop as an observation."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFound(ToolError):
    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Unknown tool: {tool_name}")


class ExecutionFailed(ToolError):
    def __init__(self, tool_name: str, reason: str):
        super().__init__(tool_name, reason)
        self.reason = reason


class DuplicateTool(ToolError):
    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool '{tool_name}' is already registered.")


class McpError(AgentError):
    """MCP connection or handshake failure, surfaced at connect time."""


class LoopExhausted(AgentError):
    """The ReAct loop hit its iteration cap.

    Not a failure: the loop reports it through ``LoopResult.exhausted`` and
    never raises it out of a turn.  Callers that prefer an exception can use
    ``LoopResult.raise_if_exhausted()``.
    """

    def __init__(self, iterations: int, partial: str = ""):
        super().__init__(f"ReAct loop reached its iteration cap ({iterations})")
        self.iterations = iterations
        self.partial = partial
