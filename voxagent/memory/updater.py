"""
State Updater: rule-based, incremental capsule maintenance.

Not every utterance warrants a model call.  The updater derives the next
StateCapsule from the previous one and the new input with plain pattern rules
(intent, tone, goals, entities, open slots), and decides whether a partial
utterance deserves a short backchannel acknowledgment ("mm-hmm") while the
user is still talking.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from voxagent.memory.capsule import DEFAULT_TOKEN_BUDGET, StateCapsule, Tone

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Backchannel thresholds
# ---------------------------------------------------------------------------

SHORT_UTTERANCE_WORDS = 10
SHORT_UTTERANCE_PAUSE_MS = 500
CONJUNCTION_PAUSE_MS = 400

_COMPLETION_CUES = ("done", "finished", "できた")
_PROGRESS_CUES = ("mixed", "added", "溶いた", "入れた")
_CONJUNCTIONS = ("and", "but", "so")
_JA_CONTINUATIONS = ("で", "が")

# ---------------------------------------------------------------------------
# Extraction rules
# ---------------------------------------------------------------------------

_TONE_MARKERS: list[tuple[Tone, tuple[str, ...]]] = [
    (Tone.FRUSTRATED, (
        "not working", "doesn't work", "does not work", "still broken", "annoying",
        "ugh", "again?", "that's wrong", "useless", "come on",
    )),
    (Tone.CONFUSED, (
        "confused", "don't understand", "do not understand", "what do you mean",
        "not sure", "huh", "i'm lost", "makes no sense",
    )),
    (Tone.SATISFIED, (
        "thanks", "thank you", "great", "perfect", "awesome", "that works", "nice",
    )),
]

_GREETING_RE = re.compile(r"^\s*(hi|hello|hey|good (morning|afternoon|evening))\b", re.I)
_FAREWELL_RE = re.compile(r"\b(bye|goodbye|see you|good night)\b", re.I)
_QUESTION_RE = re.compile(
    r"^\s*(what|why|how|when|where|who|which|can|could|would|is|are|do|does|did|should)\b", re.I
)
_REQUEST_RE = re.compile(
    r"^\s*(please\s+)?(open|read|find|search|create|write|run|show|list|delete|fix|"
    r"update|summarize|tell|check|remind|schedule|add|make|start|stop)\b",
    re.I,
)
_GOAL_RE = re.compile(
    r"\b(?:i want to|i need to|i'd like to|i would like to|help me|i'm trying to|i am trying to)"
    r"\s+([^.?!,;]+)",
    re.I,
)
_RESET_GOALS_RE = re.compile(r"\b(never ?mind|forget it|forget about it)\b", re.I)

_URL_RE = re.compile(r"https?://\S+")
_FILE_RE = re.compile(r"(?:[\w.-]+/)*[\w-]+\.[A-Za-z][A-Za-z0-9]{0,5}\b")
_TIME_RE = re.compile(r"\b\d{1,2}(?::\d{2})?\s?(?:am|pm)\b|\b\d{1,2}:\d{2}\b", re.I)
_QUOTED_RE = re.compile(r"[\"“]([^\"”]{1,80})[\"”]")

_FILE_VERBS = re.compile(r"\b(read|open|edit|write|delete)\b", re.I)
_TIME_VERBS = re.compile(r"\b(remind|schedule|alarm)\b", re.I)


class StateUpdater(ABC):
    """Derives capsule updates and backchannel decisions without a model call."""

    @abstractmethod
    def update(self, capsule: StateCapsule, user_input: str) -> StateCapsule:
        """Return the next capsule.  Must not mutate ``capsule``."""

    @abstractmethod
    def should_backchannel(self, partial_input: str, pause_ms: int) -> Optional[str]:
        """Return an acknowledgment to speak, or None to stay silent."""


class RuleBasedStateUpdater(StateUpdater):
    def __init__(self, token_budget: int = DEFAULT_TOKEN_BUDGET):
        self._token_budget = token_budget

    def should_backchannel(self, partial_input: str, pause_ms: int) -> Optional[str]:
        lower = partial_input.strip().lower()
        if not lower:
            return None
        word_count = len(lower.split())

        if word_count < SHORT_UTTERANCE_WORDS and pause_ms > SHORT_UTTERANCE_PAUSE_MS:
            if any(cue in lower for cue in _COMPLETION_CUES):
                return "got it"
            if any(cue in lower for cue in _PROGRESS_CUES):
                return "mm-hmm"

        if pause_ms > CONJUNCTION_PAUSE_MS:
            trimmed = lower.rstrip(" .,!?…、。")
            words = trimmed.split()
            if words and words[-1] in _CONJUNCTIONS:
                return "uh-huh"
            if trimmed.endswith(_JA_CONTINUATIONS):
                return "uh-huh"

        return None

    def update(self, capsule: StateCapsule, user_input: str) -> StateCapsule:
        text = " ".join(user_input.split())
        updated = capsule.copy()
        if not text:
            return updated
        lower = text.lower()

        updated.set_intent(self._classify_intent(text, lower))
        updated.set_tone(self._detect_tone(lower))

        if _RESET_GOALS_RE.search(lower):
            updated.user_goals = []
        for match in _GOAL_RE.finditer(text):
            updated.add_goal(match.group(1).strip())

        remainder = text
        for url in _URL_RE.findall(text):
            updated.set_entity("url", url.rstrip(".,)"))
            remainder = remainder.replace(url, " ")
        files = _FILE_RE.findall(remainder)
        if files:
            updated.set_entity("file", files[-1])
        times = _TIME_RE.findall(remainder)
        if times:
            updated.set_entity("time", times[-1].strip())
        quoted = _QUOTED_RE.findall(remainder)
        if quoted:
            updated.set_entity("quoted", quoted[-1])

        self._update_slots(updated, lower, has_file=bool(files), has_time=bool(times))

        confidence = 1.0 - 0.15 * len(updated.open_slots)
        if updated.tone is Tone.CONFUSED:
            confidence -= 0.3
        if updated.intent == "statement" and len(lower.split()) < 3:
            confidence -= 0.2
        updated.set_confidence(confidence)

        trimmed = updated.fit_to_budget(self._token_budget)
        if trimmed:
            logger.debug("state_updater.trimmed", steps=trimmed)
        return updated

    @staticmethod
    def _classify_intent(text: str, lower: str) -> str:
        if _GREETING_RE.search(lower):
            return "greeting"
        if _FAREWELL_RE.search(lower):
            return "farewell"
        if _REQUEST_RE.search(lower):
            return "request"
        if text.endswith("?") or _QUESTION_RE.search(lower):
            return "question"
        if any(marker in lower for marker in ("thanks", "thank you")):
            return "acknowledgement"
        return "statement"

    @staticmethod
    def _detect_tone(lower: str) -> Tone:
        for tone, markers in _TONE_MARKERS:
            if any(marker in lower for marker in markers):
                return tone
        return Tone.NEUTRAL

    @staticmethod
    def _update_slots(capsule: StateCapsule, lower: str, *, has_file: bool, has_time: bool) -> None:
        if has_file or "file" in capsule.entities:
            capsule.remove_open_slot("file")
        elif capsule.intent == "request" and _FILE_VERBS.search(lower):
            capsule.add_open_slot("file")

        if has_time or "time" in capsule.entities:
            capsule.remove_open_slot("time")
        elif _TIME_VERBS.search(lower):
            capsule.add_open_slot("time")
