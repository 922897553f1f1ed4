"""
LlmProvider: the one capability every model backend implements.

``chat_with_tools(messages, tools)`` takes the provider-blind message list and
tool snapshot and returns an ``LlmResponse``.  The ReAct loop only ever holds
this interface; wire formats (grammar-constrained JSON, Responses API items,
Anthropic content blocks) stay inside the implementations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from voxagent.errors import ConfigError, ProviderError
from voxagent.tools.registry import ToolDefinition
from voxagent.types import ChatMessage, LlmResponse

if TYPE_CHECKING:
    from voxagent.config import AgentConfig


class LlmProvider(ABC):
    name: str = "provider"
    supports_structured_output: bool = False

    @abstractmethod
    def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> LlmResponse:
        """Run one model call.  Raises ``ProviderError`` on network/parse failure."""

    def chat_with_schema(
        self,
        messages: list[ChatMessage],
        schema: dict[str, Any],
        schema_name: str,
    ) -> LlmResponse:
        """
        One tool-free call whose content is JSON matching ``schema``.

        Only providers with ``supports_structured_output`` implement it.
        """
        raise ProviderError(f"Provider '{self.name}' does not support structured output")

    def chat(self, messages: list[ChatMessage]) -> str:
        return self.chat_with_tools(messages, []).content

    def close(self) -> None:
        """Release any held resources (HTTP clients, model handles)."""


def create_provider(config: "AgentConfig") -> LlmProvider:
    """Select the provider from the config: ``model_path`` XOR ``base_url``."""
    if config.model_path:
        from voxagent.providers.local import LocalProvider

        return LocalProvider.from_config(config)
    if config.base_url:
        if config.remote_api == "anthropic":
            from voxagent.providers.claude import ClaudeProvider

            return ClaudeProvider.from_config(config)
        from voxagent.providers.remote import RemoteProvider

        return RemoteProvider.from_config(config)
    raise ConfigError("No provider configured: set model_path or base_url.")
