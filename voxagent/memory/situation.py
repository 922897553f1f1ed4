"""
Situation Messages: a short-lived feed of what is happening around the user.

Watcher summaries (and anything else the shell wants the model to be able to
look up) are pushed here with a time-to-live.  Expired entries are pruned on
every read and push.  The ``read_situation_messages`` tool exposes the feed to
the model, and its description advertises how many messages are waiting.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Callable, Optional

from voxagent.tools.registry import ToolDefinition

DEFAULT_TTL_SECONDS = 60.0


@dataclass(frozen=True)
class SituationMessage:
    text: str
    source: str
    session_id: str
    timestamp: float        # wall clock, for display
    created: float          # monotonic, for expiry


class SituationMessages:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._messages: list[SituationMessage] = []
        self._lock = threading.Lock()

    def _prune(self) -> None:
        now = self._clock()
        self._messages = [m for m in self._messages if now - m.created < self._ttl]

    def push(self, text: str, source: str, session_id: str = "") -> None:
        with self._lock:
            self._prune()
            self._messages.append(
                SituationMessage(
                    text=text,
                    source=source,
                    session_id=session_id,
                    timestamp=time.time(),
                    created=self._clock(),
                )
            )

    def read_all(self) -> list[SituationMessage]:
        with self._lock:
            self._prune()
            return list(self._messages)

    def read_by_session(self, session_id: str) -> list[SituationMessage]:
        return [m for m in self.read_all() if m.session_id == session_id]

    def count(self) -> int:
        return len(self.read_all())

    def session_ids(self) -> list[str]:
        seen: list[str] = []
        for message in self.read_all():
            if message.session_id and message.session_id not in seen:
                seen.append(message.session_id)
        return seen

    def last_timestamp(self) -> Optional[float]:
        messages = self.read_all()
        return messages[-1].timestamp if messages else None


def _format_time(timestamp: float) -> str:
    return time.strftime("%H:%M:%S", time.localtime(timestamp))


def format_situation_messages(messages: list[SituationMessage], show_session: bool = False) -> str:
    if not messages:
        return "No recent situation messages."
    lines = [f"{len(messages)} situation message(s):"]
    for m in messages:
        prefix = f"[{_format_time(m.timestamp)}] ({m.source})"
        if show_session and m.session_id:
            prefix += f" [{PurePath(m.session_id).name or m.session_id}]"
        lines.append(f"{prefix} {m.text}")
    return "\n".join(lines) + "\n"


def make_read_situation_tool(store: SituationMessages) -> ToolDefinition:
    base_description = (
        "Read recent situation messages from watcher events, hooks, and MCP tools. "
        "Pass session_id to filter by a specific session."
    )

    def describe() -> Optional[str]:
        count = store.count()
        if count == 0:
            return None
        last = store.last_timestamp()
        when = _format_time(last) if last is not None else "?"
        return f"{base_description} ({count} message(s) waiting, latest at {when})"

    def handle_read(session_id: Optional[str] = None) -> str:
        if session_id:
            return format_situation_messages(store.read_by_session(session_id))
        return format_situation_messages(store.read_all(), show_session=len(store.session_ids()) > 1)

    return ToolDefinition(
        name="read_situation_messages",
        description=base_description,
        input_schema={
            "type": "object",
            "properties": {
                "session_id": {
                    "type": "string",
                    "description": "Only return messages from this session (optional)",
                },
            },
        },
        handler=handle_read,
        category="situation",
        describe=describe,
    )
