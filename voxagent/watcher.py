"""
Watcher event router: debounced activity summaries for the voice shell.

External watchers (editor hooks, session log tailers, the speech front end)
push JSON events tagged by ``source``:

    {"source": "hook", "event": "PostToolUse", "tool_name": "Edit", "file_path": "..."}
    {"source": "session", "type": "assistant", "tool_uses": [...], "text_content": "..."}
    {"source": "user", "text": "what's it doing now?"}

A daemon thread consumes the queue.  User speech is emitted at once as a HIGH
summary.  Everything else is buffered until no event has arrived for the
debounce interval, then digested into one NORMAL summary.  The caller polls
``drain`` (non-blocking) and always receives HIGH items first.
"""

from __future__ import annotations

import json
import queue
import threading
from collections import Counter
from pathlib import PurePath
from typing import Annotated, Any, Callable, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from voxagent.errors import AgentError
from voxagent.tools.registry import ToolDefinition
from voxagent.types import WatcherPriority, WatcherSummary

logger = structlog.get_logger(__name__)

NOISE_SESSION_TYPES = frozenset({
    "progress",
    "file-history-snapshot",
    "queue-operation",
    "system",
    "result",
    "summary",
})
COUNTED_TOOLS = ("Write", "Edit", "MultiEdit", "Bash", "Read")
MAX_FILES = 5
MAX_SUMMARY_CHARS = 500
SUMMARY_PREFIX = "[Activity Update]"


class ToolUse(BaseModel):
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class HookEvent(BaseModel):
    source: Literal["hook"] = "hook"
    event: str = ""
    tool_name: Optional[str] = None
    file_path: Optional[str] = None
    session_id: Optional[str] = None


class SessionEvent(BaseModel):
    source: Literal["session"] = "session"
    type: str = ""
    tool_uses: list[ToolUse] = Field(default_factory=list)
    text_content: Optional[str] = None
    session_id: Optional[str] = None


class UserSpeechEvent(BaseModel):
    source: Literal["user"] = "user"
    text: str


WatcherEvent = Annotated[
    Union[HookEvent, SessionEvent, UserSpeechEvent],
    Field(discriminator="source"),
]
_EVENT_ADAPTER: TypeAdapter = TypeAdapter(WatcherEvent)


def parse_event(raw: str) -> Union[HookEvent, SessionEvent, UserSpeechEvent]:
    """Parse one JSON event.  Malformed JSON or an unknown source is an ``AgentError``."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AgentError(f"Invalid watcher event JSON: {exc}") from exc
    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise AgentError(f"Invalid watcher event: {exc.errors()[0]['msg']}") from exc


def _basename(path: str) -> str:
    return PurePath(path).name or path


def summarize(events: list[Union[HookEvent, SessionEvent, UserSpeechEvent]]) -> Optional[str]:
    """
    Count-style digest of a batch: tool usage, touched files, completion.

    Returns None when nothing in the batch is worth reporting.
    """
    tool_counts: Counter[str] = Counter()
    files: list[str] = []
    stopped = False

    def touch(path: Optional[str]) -> None:
        if path:
            short = _basename(path)
            if short not in files:
                files.append(short)

    for event in events:
        if isinstance(event, SessionEvent):
            if event.type in NOISE_SESSION_TYPES:
                continue
            for use in event.tool_uses:
                tool_counts[use.name] += 1
                file_path = use.input.get("file_path")
                touch(file_path if isinstance(file_path, str) else None)
        elif isinstance(event, HookEvent):
            if event.event == "Stop":
                stopped = True
                continue
            if event.tool_name:
                tool_counts[event.tool_name] += 1
            touch(event.file_path)

    parts: list[str] = []
    counted = [(name, tool_counts[name]) for name in COUNTED_TOOLS if tool_counts[name]]
    if counted:
        counted.sort(key=lambda item: item[1], reverse=True)
        parts.append("Tools used: " + ", ".join(f"{name} x{count}" for name, count in counted))
    if files:
        extra = f" (+{len(files) - MAX_FILES} more)" if len(files) > MAX_FILES else ""
        parts.append("Files: " + ", ".join(files[:MAX_FILES]) + extra)
    if stopped:
        parts.append("The session finished responding")

    if not parts:
        return None
    summary = f"{SUMMARY_PREFIX} {'. '.join(parts)}"
    if len(summary) > MAX_SUMMARY_CHARS:
        summary = summary[: MAX_SUMMARY_CHARS - 3] + "..."
    return summary


_STOP = object()


class EventRouter:
    """
    Debounces watcher events on a daemon thread and queues prioritized summaries.

    ``on_summary`` (if given) is called from the router thread for every NORMAL
    summary along with the session ids the batch came from.
    """

    def __init__(
        self,
        debounce_seconds: float = 1.5,
        on_summary: Optional[Callable[[str, list[str]], None]] = None,
    ):
        self._debounce = max(0.01, debounce_seconds)
        self._on_summary = on_summary
        self._events: queue.Queue = queue.Queue()
        self._high: list[WatcherSummary] = []
        self._normal: list[WatcherSummary] = []
        self._summaries_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="voxagent-event-router", daemon=True)
        self._thread.start()

    def feed(self, event: Union[HookEvent, SessionEvent, UserSpeechEvent]) -> None:
        self._events.put(event)

    def feed_json(self, raw: str) -> None:
        self.feed(parse_event(raw))

    def feed_user_speech(self, text: str) -> None:
        self.feed(UserSpeechEvent(text=text))

    def drain(self) -> list[WatcherSummary]:
        """Everything produced so far, HIGH before NORMAL, FIFO within each."""
        with self._summaries_lock:
            drained = self._high + self._normal
            self._high = []
            self._normal = []
        return drained

    def close(self, timeout: float = 2.0) -> None:
        """Flush any buffered events and stop the router thread."""
        if self._thread.is_alive():
            self._events.put(_STOP)
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    # -- router thread ----------------------------------------------------

    def _run(self) -> None:
        buffer: list[Union[HookEvent, SessionEvent]] = []
        while True:
            try:
                event = self._events.get(timeout=self._debounce if buffer else None)
            except queue.Empty:
                self._flush(buffer)
                buffer = []
                continue

            if event is _STOP:
                self._flush(buffer)
                return
            if isinstance(event, UserSpeechEvent):
                logger.info("event_router.user_speech", text=event.text)
                self._emit(WatcherSummary(event.text, WatcherPriority.HIGH))
                continue
            buffer.append(event)

    def _flush(self, buffer: list[Union[HookEvent, SessionEvent]]) -> None:
        if not buffer:
            return
        text = summarize(buffer)
        if text is None:
            logger.debug("event_router.nothing_to_report", events=len(buffer))
            return
        logger.info("event_router.summary", text=text, events=len(buffer))
        self._emit(WatcherSummary(text, WatcherPriority.NORMAL))
        if self._on_summary is not None:
            sessions = sorted({e.session_id for e in buffer if e.session_id})
            try:
                self._on_summary(text, sessions)
            except Exception:
                logger.exception("event_router.on_summary_failed")

    def _emit(self, summary: WatcherSummary) -> None:
        with self._summaries_lock:
            if summary.priority == WatcherPriority.HIGH:
                self._high.append(summary)
            else:
                self._normal.append(summary)


def make_report_event_tool(router: EventRouter) -> ToolDefinition:
    """``report_event``: lets the model or an MCP client push a watcher event."""

    def handle_report(**event: Any) -> str:
        try:
            parsed = _EVENT_ADAPTER.validate_python(event)
        except ValidationError as exc:
            raise ValueError(f"Invalid event: {exc.errors()[0]['msg']}") from exc
        router.feed(parsed)
        return "ok"

    return ToolDefinition(
        name="report_event",
        description=(
            "Report a watcher event (from editor hooks or session monitoring). "
            "Events are debounced and summarized automatically."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "source": {
                    "type": "string",
                    "enum": ["hook", "session", "user"],
                    "description": "Event source: 'hook', 'session', or 'user'",
                },
                "text": {"type": "string", "description": "User speech text (for user events)"},
                "event": {"type": "string", "description": "Hook event type (e.g. 'PostToolUse', 'Stop')"},
                "tool_name": {"type": "string", "description": "Tool name (for hook events)"},
                "file_path": {"type": "string", "description": "File path affected (for hook events)"},
                "session_id": {"type": "string", "description": "Session the event belongs to"},
                "type": {"type": "string", "description": "Session event type (e.g. 'assistant', 'user')"},
                "tool_uses": {
                    "type": "array",
                    "description": "Tool use entries (for session events)",
                    "items": {
                        "type": "object",
                        "properties": {"name": {"type": "string"}, "input": {"type": "object"}},
                    },
                },
                "text_content": {
                    "type": "string",
                    "description": "Text content from the message (for session events)",
                },
            },
            "required": ["source"],
        },
        handler=handle_report,
        category="watcher",
    )
