"""
State Capsule: the compressed conversation state.

Instead of replaying the full transcript, every full turn is seeded with a
small structured summary of where the conversation stands: the current intent,
extracted entities, the user's goals, their tone, slots still waiting for a
value, and how confident the updater is in all of this.

The serialized capsule must stay within a small token budget.  Collections are
capped on every merge and ``fit_to_budget`` trims the oldest items (and then
over-long strings) until the prompt fragment fits.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_INTENT = "initial_greeting"
DEFAULT_TOKEN_BUDGET = 200
# The capsule skeleton alone needs a few dozen tokens.
MIN_TOKEN_BUDGET = 50
CHARS_PER_TOKEN = 4

MAX_GOALS = 5
MAX_ENTITIES = 8
MAX_OPEN_SLOTS = 5
MAX_TEXT_CHARS = 80
MIN_TEXT_CHARS = 24


class Tone(str, Enum):
    NEUTRAL = "neutral"
    CONFUSED = "confused"
    SATISFIED = "satisfied"
    FRUSTRATED = "frustrated"


def _clip(text: str, limit: int) -> str:
    text = " ".join(str(text).split())
    if len(text) <= limit:
        return text
    return text[: max(1, limit - 1)] + "…"


def estimate_tokens(text: str) -> int:
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


@dataclass
class StateCapsule:
    intent: str = DEFAULT_INTENT
    entities: dict[str, str] = field(default_factory=dict)
    user_goals: list[str] = field(default_factory=list)
    tone: Tone = Tone.NEUTRAL
    open_slots: list[str] = field(default_factory=list)
    confidence: float = 1.0

    def __post_init__(self) -> None:
        self.tone = Tone(self.tone)
        self.confidence = min(1.0, max(0.0, float(self.confidence)))

    # -- mutation ---------------------------------------------------------

    def set_intent(self, intent: str) -> None:
        self.intent = _clip(intent, MAX_TEXT_CHARS) or DEFAULT_INTENT

    def set_entity(self, key: str, value: str) -> None:
        # Re-inserting moves the key to the end, so "oldest" stays meaningful.
        self.entities.pop(key, None)
        self.entities[_clip(key, MIN_TEXT_CHARS)] = _clip(value, MAX_TEXT_CHARS)
        while len(self.entities) > MAX_ENTITIES:
            self.entities.pop(next(iter(self.entities)))

    def add_goal(self, goal: str) -> None:
        goal = _clip(goal, MAX_TEXT_CHARS)
        if goal and goal not in self.user_goals:
            self.user_goals.append(goal)
        del self.user_goals[:-MAX_GOALS]

    def remove_goal(self, goal: str) -> None:
        self.user_goals = [g for g in self.user_goals if g != goal]

    def set_tone(self, tone: Tone | str) -> None:
        self.tone = Tone(tone)

    def add_open_slot(self, slot: str) -> None:
        if slot not in self.open_slots:
            self.open_slots.append(slot)
        del self.open_slots[:-MAX_OPEN_SLOTS]

    def remove_open_slot(self, slot: str) -> None:
        self.open_slots = [s for s in self.open_slots if s != slot]

    def set_confidence(self, confidence: float) -> None:
        self.confidence = min(1.0, max(0.0, float(confidence)))

    def clear(self) -> None:
        fresh = StateCapsule()
        self.__dict__.update(fresh.__dict__)

    def copy(self) -> "StateCapsule":
        return StateCapsule(
            intent=self.intent,
            entities=dict(self.entities),
            user_goals=list(self.user_goals),
            tone=self.tone,
            open_slots=list(self.open_slots),
            confidence=self.confidence,
        )

    # -- serialization ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "entities": dict(self.entities),
            "user_goals": list(self.user_goals),
            "tone": self.tone.value,
            "open_slots": list(self.open_slots),
            "confidence": round(self.confidence, 2),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateCapsule":
        return cls(
            intent=str(data.get("intent") or DEFAULT_INTENT),
            entities={str(k): str(v) for k, v in (data.get("entities") or {}).items()},
            user_goals=[str(g) for g in data.get("user_goals") or []],
            tone=data.get("tone") or Tone.NEUTRAL,
            open_slots=[str(s) for s in data.get("open_slots") or []],
            confidence=data.get("confidence", 1.0),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_prompt_fragment(self) -> str:
        return f"<State Capsule>\n{self.to_json()}\n</State Capsule>"

    def estimate_tokens(self) -> int:
        return estimate_tokens(self.to_prompt_fragment())

    def fit_to_budget(self, max_tokens: int = DEFAULT_TOKEN_BUDGET) -> int:
        """
        Trim until the prompt fragment fits ``max_tokens``.

        Drops the oldest goals, entities and open slots in turn, then shortens
        the free-text fields.  Returns the number of trimming steps taken.
        """
        steps = 0
        while self.estimate_tokens() > max_tokens:
            if len(self.user_goals) > 1:
                self.user_goals.pop(0)
            elif self.entities:
                self.entities.pop(next(iter(self.entities)))
            elif self.open_slots:
                self.open_slots.pop(0)
            elif self.user_goals:
                self.user_goals.pop(0)
            elif len(self.intent) > MIN_TEXT_CHARS:
                self.intent = _clip(self.intent, MIN_TEXT_CHARS)
            else:
                break
            steps += 1
        return steps
