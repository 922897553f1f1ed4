"""
Anthropic Messages API provider.

The remote-provider contract over Anthropic's wire format: system messages go
into the ``system`` parameter, assistant tool calls become ``tool_use`` blocks
and observations become ``tool_result`` blocks on a user turn that references
the originating ``tool_use_id``.  The SDK's own retries are disabled: a chat
request is never replayed.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Optional

import anthropic
import structlog

from voxagent.errors import ConfigError, ProviderError
from voxagent.providers.base import LlmProvider
from voxagent.tools.registry import ToolDefinition
from voxagent.types import ChatMessage, ChatRole, LlmResponse, TokenUsage, ToolCall

if TYPE_CHECKING:
    from voxagent.config import AgentConfig

logger = structlog.get_logger(__name__)


def extract_text(response: Any) -> str:
    """All text blocks of a response, ignoring tool calls."""
    return "\n".join(block.text for block in response.content if block.type == "text")


def extract_tool_calls(response: Any) -> list[ToolCall]:
    return [
        ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
        for block in response.content
        if block.type == "tool_use"
    ]


def extract_thinking(response: Any) -> Optional[str]:
    for block in response.content:
        if block.type == "thinking":
            return block.thinking
    return None


def to_anthropic_messages(messages: list[ChatMessage]) -> tuple[str, list[dict[str, Any]]]:
    """
    Convert the neutral message list into ``(system, messages)``.

    Consecutive turns of the same role are merged, since the API requires
    user/assistant alternation.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    for message in messages:
        if message.role == ChatRole.SYSTEM:
            system_parts.append(message.content)
        elif message.role == ChatRole.TOOL:
            append("user", [{
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
            }])
        elif message.role == ChatRole.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments,
                })
            if blocks:
                append("assistant", blocks)
        else:
            append("user", [{"type": "text", "text": message.content}])

    return "\n\n".join(p for p in system_parts if p), converted


class ClaudeProvider(LlmProvider):
    name = "anthropic"

    def __init__(
        self,
        client: Any,
        model: str,
        max_tokens: int = 2048,
        temperature: Optional[float] = None,
        request_timeout_seconds: float = 120.0,
    ):
        self._client = client
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._request_timeout_seconds = request_timeout_seconds
        self._total_calls = 0

    @classmethod
    def from_config(cls, config: "AgentConfig") -> "ClaudeProvider":
        if not config.anthropic_api_key:
            raise ConfigError("remote_api 'anthropic' requires ANTHROPIC_API_KEY to be set.")
        client = anthropic.Anthropic(
            api_key=config.anthropic_api_key,
            base_url=config.base_url,
            max_retries=0,
            timeout=config.request_timeout_seconds,
        )
        logger.info("claude_provider.initialized", model=config.model, base_url=config.base_url)
        return cls(
            client,
            model=config.model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            request_timeout_seconds=config.request_timeout_seconds,
        )

    def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> LlmResponse:
        system, api_messages = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": api_messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [tool.to_api_format() for tool in tools]
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature

        start_time = time.monotonic()
        try:
            response = self._client.messages.create(**kwargs)
        except anthropic.APIConnectionError as e:
            logger.error("claude_provider.connection_error", error=str(e))
            raise ProviderError(f"Connection to Anthropic API failed: {e}") from e
        except anthropic.APIStatusError as e:
            logger.error("claude_provider.api_error", error=str(e), status=e.status_code)
            raise ProviderError(f"Anthropic API error {e.status_code}: {e.message}") from e
        except anthropic.APIError as e:
            logger.error("claude_provider.api_error", error=str(e))
            raise ProviderError(f"Anthropic API error: {e}") from e

        self._total_calls += 1
        usage = None
        if getattr(response, "usage", None) is not None:
            usage = TokenUsage(
                input_tokens=response.usage.input_tokens or 0,
                output_tokens=response.usage.output_tokens or 0,
            )
        tool_calls = extract_tool_calls(response)
        logger.debug(
            "claude_provider.response",
            stop_reason=response.stop_reason,
            tool_calls=len(tool_calls),
            elapsed_seconds=round(time.monotonic() - start_time, 2),
        )
        return LlmResponse(
            content=extract_text(response),
            tool_calls=tool_calls,
            reasoning=extract_thinking(response),
            usage=usage,
        )

    def close(self) -> None:
        self._client.close()
