"""
Core data types shared across the runtime.

These containers cross subsystem boundaries (providers, harness, memory, the
agent facade).  They live here rather than in a specific subsystem to avoid
circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ChatRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A structured tool invocation emitted by a provider."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatMessage:
    """
    One entry of a conversation.

    Frozen: once appended to a message list it is never edited.  Ordering of
    the list is the only source of truth for sequencing.  An assistant turn
    that requested tools carries ``tool_calls``; the matching observation is a
    TOOL message whose ``tool_call_id`` references the originating call.
    """

    role: ChatRole
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=ChatRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=ChatRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role=ChatRole.ASSISTANT, content=content)

    @classmethod
    def assistant_tool_calls(cls, calls: list[ToolCall], content: str = "") -> "ChatMessage":
        return cls(role=ChatRole.ASSISTANT, content=content, tool_calls=tuple(calls))

    @classmethod
    def tool_result(cls, call_id: str, name: str, content: str) -> "ChatMessage":
        return cls(role=ChatRole.TOOL, content=content, tool_call_id=call_id, tool_name=name)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: Optional["TokenUsage"]) -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class LlmResponse:
    """
    The provider-blind shape every ``chat_with_tools`` implementation returns.

    A response with at least one tool call is an ACT step; a response with none
    is a final answer.
    """

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning: Optional[str] = None
    usage: Optional[TokenUsage] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class AgentResponse:
    """What ``Agent.step`` hands back to the shell."""

    content: str
    reasoning_trace: Optional[str] = None
    exhausted: bool = False
    iterations: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    keywords: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "reasoning_trace": self.reasoning_trace,
            "exhausted": self.exhausted,
            "iterations": self.iterations,
            "keywords": list(self.keywords),
            "usage": self.usage.to_dict(),
        }


class WatcherPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"


@dataclass(frozen=True)
class WatcherSummary:
    text: str
    priority: WatcherPriority = WatcherPriority.NORMAL

    def to_dict(self) -> dict[str, str]:
        return {"text": self.text, "priority": self.priority.value}
