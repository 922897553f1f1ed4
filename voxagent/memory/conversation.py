"""
Conversation Memory: ordered history plus the current State Capsule.

The Agent is the single owner.  History is a list of ``MessageEntry``; entries
flagged as backchannel hold only the marker ``⟂`` and exist for conversational
tempo bookkeeping.  They are never part of a prompt assembled for the model.

Prompt assembly for a full turn:

    [system prompt]            (when set)
    <State Capsule> message    (always)
    non-backchannel history
    [skill catalog]            (when skills exist)
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Optional

import structlog

from voxagent.memory.capsule import DEFAULT_TOKEN_BUDGET, MIN_TOKEN_BUDGET, StateCapsule
from voxagent.types import ChatMessage, ChatRole

logger = structlog.get_logger(__name__)

BACKCHANNEL_MARKER = "⟂"
DEFAULT_MAX_MESSAGES = 100


@dataclass(frozen=True)
class MessageEntry:
    message: ChatMessage
    is_backchannel: bool = False


def estimate_message_tokens(message: ChatMessage) -> int:
    return len(message.content) // 4 + 10


class ConversationMemory:
    """
    Bounded conversation history and compressed state.

    Mutated only through ``add_message``, ``add_backchannel`` and
    ``update_state_capsule`` (plus ``compact``/``clear``).  Reads return
    copies, so nothing outside the owner ever holds a live reference.
    """

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        state_token_budget: int = DEFAULT_TOKEN_BUDGET,
    ):
        self._entries: list[MessageEntry] = []
        self._capsule = StateCapsule()
        self._max_messages = max(1, max_messages)
        self._state_token_budget = max(MIN_TOKEN_BUDGET, int(state_token_budget))
        self._lock = threading.RLock()

    # -- mutation ---------------------------------------------------------

    def add_message(self, message: ChatMessage) -> None:
        with self._lock:
            self._entries.append(MessageEntry(message))
            self._trim()

    def add_backchannel(self) -> None:
        with self._lock:
            self._entries.append(
                MessageEntry(ChatMessage.assistant(BACKCHANNEL_MARKER), is_backchannel=True)
            )
            self._trim()

    def update_state_capsule(self, capsule: StateCapsule) -> None:
        fitted = capsule.copy()
        fitted.fit_to_budget(self._state_token_budget)
        with self._lock:
            self._capsule = fitted

    def clear(self) -> None:
        """Drop all history and reset the capsule to its defaults."""
        with self._lock:
            self._entries.clear()
            self._capsule = StateCapsule()

    def compact(self, target_tokens: int) -> int:
        """Drop the oldest non-system messages until under ``target_tokens``."""
        dropped = 0
        with self._lock:
            while self._estimate_locked() > target_tokens:
                index = next(
                    (
                        i for i, entry in enumerate(self._entries)
                        if not entry.is_backchannel and entry.message.role != ChatRole.SYSTEM
                    ),
                    None,
                )
                if index is None:
                    break
                del self._entries[index]
                dropped += 1
        if dropped:
            logger.info("conversation_memory.compacted", dropped=dropped, target_tokens=target_tokens)
        return dropped

    def _trim(self) -> None:
        """Keep at most ``max_messages`` entries; system messages always survive."""
        if len(self._entries) <= self._max_messages:
            return
        system = [e for e in self._entries if e.message.role == ChatRole.SYSTEM]
        others = [e for e in self._entries if e.message.role != ChatRole.SYSTEM]
        keep = max(0, self._max_messages - len(system))
        self._entries = system + (others[len(others) - keep:] if keep else [])

    # -- reads ------------------------------------------------------------

    @property
    def state_capsule(self) -> StateCapsule:
        with self._lock:
            return self._capsule.copy()

    def get_state_prompt(self) -> str:
        with self._lock:
            return self._capsule.to_prompt_fragment()

    def get_messages(self) -> list[ChatMessage]:
        with self._lock:
            return [e.message for e in self._entries if not e.is_backchannel]

    def get_messages_with_backchannels(self) -> list[ChatMessage]:
        with self._lock:
            return [e.message for e in self._entries]

    def get_last_messages(self, n: int) -> list[ChatMessage]:
        messages = self.get_messages()
        return messages[-n:] if n > 0 else []

    def build_prompt(
        self,
        system_prompt: Optional[str] = None,
        skill_catalog: Optional[str] = None,
    ) -> list[ChatMessage]:
        """Assemble the message list for a full turn (backchannels excluded)."""
        with self._lock:
            prompt: list[ChatMessage] = []
            if system_prompt:
                prompt.append(ChatMessage.system(system_prompt))
            prompt.append(ChatMessage.system(self._capsule.to_prompt_fragment()))
            prompt.extend(e.message for e in self._entries if not e.is_backchannel)
        if skill_catalog:
            prompt.append(ChatMessage.system(skill_catalog))
        return prompt

    def estimate_tokens(self) -> int:
        with self._lock:
            return self._estimate_locked()

    def _estimate_locked(self) -> int:
        return sum(
            estimate_message_tokens(e.message) for e in self._entries if not e.is_backchannel
        )

    def to_json(self) -> str:
        return json.dumps(
            [m.to_dict() for m in self.get_messages()], ensure_ascii=False, indent=2
        )

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries if not e.is_backchannel)

    @property
    def total_len(self) -> int:
        with self._lock:
            return len(self._entries)
