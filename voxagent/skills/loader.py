"""
Skill Loader: discovers skill definition files on disk.

A skill file is a Markdown prompt preceded by a JSON header between dashes:

    ---
    {"name": "activity_report", "description": "...", "tools": ["read"]}
    ---

    Instruction prompt...

Files that cannot be parsed are skipped with a warning; loading never fails
the Agent's construction.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import structlog

from voxagent.skills import SkillDefinition

logger = structlog.get_logger(__name__)

# Leading "---" line, one JSON object, closing "---", then the prompt body
_FRONTMATTER_RE = re.compile(r"^\s*---\s*\n(\{.*?\})\s*\n---\s*\n?(.*)", re.DOTALL)


def parse_skill_file(path: Path) -> SkillDefinition | None:
    """Parse one skill file.  Returns None (with a warning logged) on failure."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("skill_loader.read_error", path=str(path), error=str(e))
        return None

    match = _FRONTMATTER_RE.match(text)
    if not match:
        logger.warning(
            "skill_loader.header_missing",
            path=str(path),
            expected="---, a JSON object, ---",
        )
        return None

    try:
        meta: dict[str, Any] = json.loads(match.group(1).strip())
    except json.JSONDecodeError as exc:
        logger.warning("skill_loader.header_invalid", path=str(path), error=str(exc))
        return None

    name = meta.get("name")
    description = meta.get("description")
    prompt = match.group(2).strip()
    if not name or not description or not prompt:
        logger.warning(
            "skill_loader.missing_fields",
            path=str(path),
            missing=[f for f, v in (("name", name), ("description", description), ("body", prompt)) if not v],
        )
        return None

    tools = meta.get("tools", [])
    if not isinstance(tools, list):
        tools = []

    return SkillDefinition(
        name=str(name),
        description=str(description),
        prompt=prompt,
        tools=[str(t) for t in tools],
        source_file=path,
    )


def discover_skills(directory: Path) -> list[SkillDefinition]:
    """Parse every ``*.md`` skill file in ``directory``, sorted by file name."""
    if not directory.is_dir():
        logger.warning("skill_loader.directory_missing", path=str(directory))
        return []

    skills: list[SkillDefinition] = []
    for md_file in sorted(directory.glob("*.md")):
        if md_file.name[0] == ".":
            continue
        skill = parse_skill_file(md_file)
        if skill:
            skills.append(skill)
            logger.info("skill_loader.loaded", name=skill.name, file=md_file.name)
    return skills
