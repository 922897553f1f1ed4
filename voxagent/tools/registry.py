"""
Tool Registry: the Agent's Catalog of Capabilities.

Every tool the agent can use is registered here with its JSON Schema, its
description, and its handler.  The registry serves two purposes:

1. DISCOVERY: before each model call the loop takes a snapshot of the
   definitions (``get_definitions``), so registration racing with a turn can
   never change the tool set mid-turn.

2. DISPATCH: when the model emits a tool call, ``call`` maps the name to the
   handler and returns the textual result, or raises a ``ToolError`` that the
   loop turns into an observation.

Registration (skills, MCP connect) is rare; invocation is frequent.  Storage is
therefore guarded by a reader/writer lock so concurrent invocations never block
each other.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Iterator, Optional

import structlog

from voxagent.errors import DuplicateTool, ExecutionFailed, ToolError, ToolNotFound

logger = structlog.get_logger(__name__)

MAX_OUTPUT_LENGTH = 25000


class ReadWriteLock:
    """Many readers or one writer.  Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class ToolDefinition:
    """
    A registered tool with its schema, description, and handler.

    ``input_schema`` is exactly what providers send to the model.  ``handler``
    is called with the call arguments as keyword arguments and returns text
    (anything else is serialized).  ``owner`` groups tools registered together
    (``"builtin"``, ``"skills"``, ``"mcp:<server>"``) so they can be replaced
    or removed as a unit.
    """
    name: str
    description: str
    input_schema: dict[str, Any]          # JSON Schema for tool parameters
    handler: Optional[Callable[..., Any]] = None
    category: str = "general"
    owner: str = "builtin"
    enabled: bool = True
    describe: Optional[Callable[[], Optional[str]]] = None  # Live description override

    def to_api_format(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


# JSON Schema type → Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def validate_tool_input(schema: dict[str, Any], tool_input: dict[str, Any]) -> Optional[str]:
    """
    Check required fields and basic types.

    Returns an error message on failure, or None if the input is valid.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not isinstance(prop_schema, dict):
            continue
        expected_type = prop_schema.get("type")
        py_types = _JSON_TYPE_MAP.get(expected_type) if isinstance(expected_type, str) else None
        if py_types is None:
            continue
        # bool is a subclass of int, but JSON booleans are distinct
        if isinstance(value, bool) and expected_type in ("integer", "number"):
            return f"Parameter '{name}' expected {expected_type}, got boolean"
        if not isinstance(value, py_types):
            return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"
    return None


def serialize_tool_output(result: Any) -> str:
    """Normalize handler output to the text that goes back to the model."""
    if isinstance(result, str):
        text = result
    elif isinstance(result, (dict, list, tuple, int, float, bool)) or result is None:
        try:
            text = json.dumps(result, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = str(result)
    else:
        text = str(result)
    if len(text) > MAX_OUTPUT_LENGTH:
        text = text[:MAX_OUTPUT_LENGTH] + f"\n... [truncated, {len(text)} chars total]"
    return text


class ToolRegistry:
    """
    Central, thread-safe registry for every tool available to the agent.

    Names are unique.  Registering a name that already exists fails closed
    with ``DuplicateTool``.  The one sanctioned replacement path is
    ``replace_owner``, used when an MCP server is reconnected under the same
    name: its old proxies are removed before the new ones go in.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._lock = ReadWriteLock()
        logger.debug("tool_registry.initialized")

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool.  Raises ``DuplicateTool`` on a name collision."""
        with self._lock.write():
            existing = self._tools.get(tool.name)
            if existing is not None:
                logger.warning(
                    "tool_registry.name_collision",
                    name=tool.name,
                    existing_owner=existing.owner,
                    new_owner=tool.owner,
                )
                raise DuplicateTool(tool.name)
            self._tools[tool.name] = tool
        logger.info("tool_registry.registered", name=tool.name, owner=tool.owner)

    def unregister(self, name: str) -> bool:
        with self._lock.write():
            removed = self._tools.pop(name, None)
        if removed is not None:
            logger.info("tool_registry.unregistered", name=name)
            return True
        return False

    def unregister_owner(self, owner: str) -> list[str]:
        """Remove every tool registered under ``owner``.  Returns the removed names."""
        with self._lock.write():
            names = [name for name, tool in self._tools.items() if tool.owner == owner]
            for name in names:
                del self._tools[name]
        if names:
            logger.info("tool_registry.owner_unregistered", owner=owner, count=len(names))
        return names

    def replace_owner(self, owner: str, tools: Iterable[ToolDefinition]) -> list[str]:
        """
        Atomically swap all tools of ``owner`` for ``tools``.

        Collisions with tools of another owner raise ``DuplicateTool`` before
        anything is mutated.  Returns the names that were removed.
        """
        new_tools = list(tools)
        with self._lock.write():
            seen: set[str] = set()
            for tool in new_tools:
                existing = self._tools.get(tool.name)
                if tool.name in seen or (existing is not None and existing.owner != owner):
                    raise DuplicateTool(tool.name)
                seen.add(tool.name)
            removed = [name for name, tool in self._tools.items() if tool.owner == owner]
            for name in removed:
                del self._tools[name]
            for tool in new_tools:
                tool.owner = owner
                self._tools[tool.name] = tool
        logger.info(
            "tool_registry.owner_replaced",
            owner=owner,
            removed=len(removed),
            registered=len(new_tools),
        )
        return removed

    def get(self, name: str) -> Optional[ToolDefinition]:
        with self._lock.read():
            return self._tools.get(name)

    def get_definitions(self, allowed: Optional[Iterable[str]] = None) -> list[ToolDefinition]:
        """
        Snapshot of the enabled tool definitions.

        Returns copies, not a live view: later registrations never leak into a
        list a turn is already using.
        """
        allowed_set = set(allowed) if allowed is not None else None
        with self._lock.read():
            tools = [
                tool for tool in self._tools.values()
                if tool.enabled and (allowed_set is None or tool.name in allowed_set)
            ]
        snapshot = []
        for tool in tools:
            description = tool.description
            if tool.describe is not None:
                description = tool.describe() or description
            snapshot.append(
                replace(tool, description=description, input_schema=dict(tool.input_schema))
            )
        return snapshot

    def call(self, name: str, arguments: Optional[dict[str, Any]] = None) -> str:
        """
        Invoke a tool and return its textual result.

        Raises ``ToolNotFound`` for unknown or disabled tools and
        ``ExecutionFailed`` for invalid input or any handler failure.  The
        handler runs outside the lock so a slow tool never blocks registration.
        """
        arguments = arguments if isinstance(arguments, dict) else {}
        with self._lock.read():
            tool = self._tools.get(name)
        if tool is None or not tool.enabled:
            raise ToolNotFound(name)
        if tool.handler is None:
            raise ExecutionFailed(name, f"Tool '{name}' has no handler")

        error = validate_tool_input(tool.input_schema, arguments)
        if error is not None:
            raise ExecutionFailed(name, error)

        logger.info("tool_registry.calling", name=name, argument_keys=sorted(arguments))
        try:
            result = tool.handler(**arguments)
        except ToolError:
            raise
        except Exception as exc:
            logger.warning("tool_registry.call_failed", name=name, error=str(exc))
            raise ExecutionFailed(name, str(exc) or type(exc).__name__) from exc
        text = serialize_tool_output(result)
        logger.debug("tool_registry.call_complete", name=name, result_length=len(text))
        return text

    def filtered(self, allowed: Iterable[str]) -> "FilteredToolRegistry":
        return FilteredToolRegistry(self, allowed)

    def names(self) -> list[str]:
        with self._lock.read():
            return list(self._tools)

    def is_empty(self) -> bool:
        return self.count == 0

    @property
    def count(self) -> int:
        with self._lock.read():
            return len(self._tools)


class FilteredToolRegistry:
    """
    A view of a ToolRegistry restricted to an allow-list of names.

    Used for skill invocations: the model sees only the skill's tools, and a
    call to anything outside the list is reported as not found.
    """

    def __init__(self, registry: ToolRegistry, allowed: Iterable[str]):
        self._registry = registry
        self._allowed = frozenset(allowed)

    def get_definitions(self) -> list[ToolDefinition]:
        return self._registry.get_definitions(allowed=self._allowed)

    def call(self, name: str, arguments: Optional[dict[str, Any]] = None) -> str:
        if name not in self._allowed:
            logger.warning("filtered_tool_registry.not_allowed", name=name)
            raise ToolNotFound(name)
        return self._registry.call(name, arguments)

    def is_empty(self) -> bool:
        return not self.get_definitions()

    @property
    def allowed(self) -> frozenset[str]:
        return self._allowed
