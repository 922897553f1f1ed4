"""Tools: the registry, built-in tools, and MCP proxies."""

from voxagent.tools.registry import FilteredToolRegistry, ToolDefinition, ToolRegistry

__all__ = ["FilteredToolRegistry", "ToolDefinition", "ToolRegistry"]
