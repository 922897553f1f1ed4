"""
Harmony channel handling.

Harmony-style models tag their output with channels inside one text stream:

    <|channel|>analysis<|message|>thinking...<|end|><|start|>assistant
    <|channel|>final<|message|>Hello!<|end|>

Only the ``final`` channel is meant for the user; ``analysis`` is kept as the
reasoning trace.  This is a post-processing layer over whatever raw text a
provider returns, not a provider of its own.
"""

from __future__ import annotations

from typing import Optional

from voxagent.types import ChatMessage, ChatRole

FINAL_MARKER = "<|channel|>final<|message|>"
ANALYSIS_MARKER = "<|channel|>analysis<|message|>"
CHANNEL_FINAL = "<|channel|>final"
CONTROL_TOKENS = ("<|end|>", "<|start|>", "<|return|>")


def format_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """
    Collapse runs of same-role messages, keeping the first of each run.

    System messages are always kept.
    """
    formatted: list[ChatMessage] = []
    last_role: Optional[ChatRole] = None
    for message in messages:
        if message.role == ChatRole.SYSTEM or message.role != last_role:
            formatted.append(message)
            last_role = message.role
    return formatted


def _cut_at_control(text: str) -> str:
    for token in CONTROL_TOKENS:
        index = text.find(token)
        if index != -1:
            text = text[:index]
    return text


def extract_final(output: str) -> str:
    """Text of the ``final`` channel, or the whole output when untagged."""
    index = output.find(FINAL_MARKER)
    if index == -1:
        return output
    return _cut_at_control(output[index + len(FINAL_MARKER):]).strip()


def extract_analysis(output: str) -> Optional[str]:
    index = output.find(ANALYSIS_MARKER)
    if index == -1:
        return None
    rest = output[index + len(ANALYSIS_MARKER):]
    end = rest.find(CHANNEL_FINAL)
    if end != -1:
        rest = rest[:end]
    analysis = _cut_at_control(rest).strip()
    return analysis or None


def parse_output(output: str) -> tuple[str, Optional[str]]:
    """Split raw model text into ``(content, reasoning)``."""
    return extract_final(output), extract_analysis(output)
