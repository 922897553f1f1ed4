"""
Skills: named prompt + tool-subset bundles.

A skill is a prompt expansion: a description the model sees in the catalog,
a full instruction prompt it can pull on demand through the ``lookup_skill``
tool, and an optional allow-list of tool names.  ``Agent.chat_once`` runs a
skill against a ``FilteredToolRegistry`` built from that allow-list, so a
watcher summary, for example, can never reach the shell tool.

The catalog is injected into full-turn prompts as a trailing system message:

    Available skills (use lookup_skill tool to get full instructions):
    - name: description
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog

from voxagent.tools.registry import ReadWriteLock, ToolDefinition

logger = structlog.get_logger(__name__)

CATALOG_HEADER = "Available skills (use lookup_skill tool to get full instructions):"


@dataclass
class SkillDefinition:
    name: str
    description: str
    prompt: str
    tools: list[str] = field(default_factory=list)   # Allowed tool names for chat_once
    source_file: Optional[Path] = None


class SkillRegistry:
    """
    Thread-safe registry of skills.

    Adding a skill under an existing name replaces it: skills are prompt text
    owned by the caller, not tools, so there is nothing to collide with.
    """

    def __init__(self) -> None:
        self._skills: dict[str, SkillDefinition] = {}
        self._lock = ReadWriteLock()

    def add(self, skill: SkillDefinition) -> None:
        with self._lock.write():
            existing = self._skills.get(skill.name)
            self._skills[skill.name] = skill
        if existing is not None:
            logger.info("skill_registry.overwritten", name=skill.name)
        else:
            logger.info("skill_registry.registered", name=skill.name, tools=skill.tools)

    def remove(self, name: str) -> bool:
        with self._lock.write():
            removed = self._skills.pop(name, None)
        if removed is not None:
            logger.info("skill_registry.unregistered", name=name)
            return True
        return False

    def get(self, name: str) -> Optional[SkillDefinition]:
        with self._lock.read():
            return self._skills.get(name)

    def all_skills(self) -> list[SkillDefinition]:
        with self._lock.read():
            return sorted(self._skills.values(), key=lambda s: s.name)

    def _lines(self) -> list[str]:
        return [f"- {s.name}: {s.description}" for s in self.all_skills()]

    def list_text(self) -> str:
        lines = self._lines()
        return "\n".join(lines) if lines else "No skills registered."

    def catalog(self) -> Optional[str]:
        """Catalog system message for full turns, or None when empty."""
        lines = self._lines()
        if not lines:
            return None
        return CATALOG_HEADER + "\n" + "\n".join(lines)

    @property
    def count(self) -> int:
        with self._lock.read():
            return len(self._skills)


def make_lookup_skill_tool(registry: SkillRegistry) -> ToolDefinition:
    """Build the ``lookup_skill`` tool bound to ``registry``."""

    def handle_lookup(action: str, name: Optional[str] = None) -> str:
        if action == "list":
            return registry.list_text()
        if action == "get":
            if not name:
                raise ValueError("Missing 'name' field for 'get' action")
            skill = registry.get(name)
            if skill is None:
                return f"Skill '{name}' not found. Use action 'list' to see available skills."
            return f"## Skill: {skill.name}\n\n{skill.prompt}"
        raise ValueError(f"Unknown action: {action}. Use 'list' or 'get'.")

    return ToolDefinition(
        name="lookup_skill",
        description=(
            "Look up available skills. Use action 'list' to see all skills with "
            "descriptions, or action 'get' with a skill name to retrieve the full "
            "prompt instructions."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["list", "get"],
                    "description": "Action to perform: 'list' all skills or 'get' a specific skill",
                },
                "name": {
                    "type": "string",
                    "description": "Skill name (required when action is 'get')",
                },
            },
            "required": ["action"],
        },
        handler=handle_lookup,
        category="skills",
    )
