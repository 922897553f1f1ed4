"""
The ReAct Loop: reason, act, observe, repeat.

    while iteration < max_iterations:
        response = provider.chat_with_tools(messages, tools)
        if not response.tool_calls:
            return response.content            # FinalAnswer
        messages.append(assistant tool calls)
        for call in response.tool_calls:       # emission order
            messages.append(tool result or error observation)

The tool set is snapshotted once per run, so registration racing with a turn
never changes what the model sees mid-turn.  Tool failures are observations,
never exceptions; provider failures abort the run as ``ProviderError``.  The
iteration cap is the only cancellation mechanism: when it is hit the loop
returns the best partial content it has, flagged ``exhausted``.
"""

from __future__ import annotations

import time
from typing import Any, Optional, Protocol

import structlog

from voxagent.errors import AgentError, LoopExhausted, ProviderError, ToolError
from voxagent.providers import harmony
from voxagent.providers.base import LlmProvider
from voxagent.tools.registry import ToolDefinition
from voxagent.types import ChatMessage, LlmResponse, TokenUsage, ToolCall

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10

EXHAUSTED_FALLBACK = (
    "I was working on that but ran out of steps before finishing. "
    "Want me to keep going?"
)


class ToolAccess(Protocol):
    def get_definitions(self) -> list[ToolDefinition]: ...

    def call(self, name: str, arguments: Optional[dict[str, Any]] = None) -> str: ...


class LoopResult:
    """Everything a run produced: final text, reasoning, calls, the full message list."""

    def __init__(
        self,
        text: str,
        reasoning: Optional[str] = None,
        tool_calls: Optional[list[ToolCall]] = None,
        iterations: int = 0,
        elapsed_seconds: float = 0.0,
        messages: Optional[list[ChatMessage]] = None,
        exhausted: bool = False,
        usage: Optional[TokenUsage] = None,
    ):
        self.text = text
        self.reasoning = reasoning
        self.tool_calls = tool_calls or []
        self.iterations = iterations
        self.elapsed_seconds = elapsed_seconds
        self.messages = messages or []
        self.exhausted = exhausted
        self.usage = usage or TokenUsage()

    @property
    def used_tools(self) -> bool:
        return len(self.tool_calls) > 0

    @property
    def tool_names_used(self) -> list[str]:
        return sorted({call.name for call in self.tool_calls})

    def raise_if_exhausted(self) -> "LoopResult":
        if self.exhausted:
            raise LoopExhausted(self.iterations, partial=self.text)
        return self


class ReactLoop:
    def __init__(
        self,
        provider: LlmProvider,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        harmony_output: bool = False,
    ):
        self._provider = provider
        self._max_iterations = max(1, max_iterations)
        self._harmony_output = harmony_output

        self._total_runs = 0
        self._total_iterations = 0
        self._total_tool_calls = 0

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    def run(
        self,
        messages: list[ChatMessage],
        tools: ToolAccess,
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """
        Drive the provider until it answers without tool calls or the cap is hit.

        ``messages`` is not mutated; the extended list is returned on the
        result.  Raises ``ProviderError`` if the provider fails.
        """
        effective_max = max(1, max_iterations) if max_iterations is not None else self._max_iterations
        self._total_runs += 1
        start_time = time.monotonic()
        definitions = tools.get_definitions()
        loop_messages = list(messages)
        all_tool_calls: list[ToolCall] = []
        reasoning_parts: list[str] = []
        usage = TokenUsage()
        partial = ""
        iteration = 0

        logger.info(
            "react_loop.starting",
            message_count=len(loop_messages),
            tool_count=len(definitions),
            max_iterations=effective_max,
        )

        while iteration < effective_max:
            iteration += 1
            self._total_iterations += 1

            response = self._think(loop_messages, definitions, iteration)
            usage.add(response.usage)
            content, reasoning = self._split_output(response)
            if reasoning:
                reasoning_parts.append(reasoning)

            if not response.has_tool_calls:
                loop_messages.append(ChatMessage.assistant(content))
                logger.info(
                    "react_loop.complete",
                    iterations=iteration,
                    tool_calls=len(all_tool_calls),
                    response_length=len(content),
                )
                return LoopResult(
                    text=content,
                    reasoning="\n".join(reasoning_parts) or None,
                    tool_calls=all_tool_calls,
                    iterations=iteration,
                    elapsed_seconds=time.monotonic() - start_time,
                    messages=loop_messages,
                    usage=usage,
                )

            if content:
                partial = content
            loop_messages.append(ChatMessage.assistant_tool_calls(response.tool_calls, content))
            for call in response.tool_calls:
                self._total_tool_calls += 1
                all_tool_calls.append(call)
                loop_messages.append(
                    ChatMessage.tool_result(call.id, call.name, self._execute(tools, call))
                )

        logger.warning(
            "react_loop.max_iterations",
            max=effective_max,
            tool_calls=len(all_tool_calls),
        )
        return LoopResult(
            text=partial or EXHAUSTED_FALLBACK,
            reasoning="\n".join(reasoning_parts) or None,
            tool_calls=all_tool_calls,
            iterations=iteration,
            elapsed_seconds=time.monotonic() - start_time,
            messages=loop_messages,
            exhausted=True,
            usage=usage,
        )

    def respond_structured(
        self,
        messages: list[ChatMessage],
        schema: dict[str, Any],
        schema_name: str,
    ) -> LoopResult:
        """A single tool-free call constrained to ``schema``; ``text`` is the JSON answer."""
        start_time = time.monotonic()
        self._total_runs += 1
        self._total_iterations += 1
        try:
            response = self._provider.chat_with_schema(list(messages), schema, schema_name)
        except AgentError:
            logger.warning("react_loop.structured_failed", schema=schema_name)
            raise
        except Exception as exc:
            logger.warning("react_loop.structured_failed", schema=schema_name, error=str(exc))
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc

        content, reasoning = self._split_output(response)
        return LoopResult(
            text=content,
            reasoning=reasoning,
            iterations=1,
            elapsed_seconds=time.monotonic() - start_time,
            messages=list(messages),
            usage=response.usage,
        )

    def _think(
        self,
        messages: list[ChatMessage],
        definitions: list[ToolDefinition],
        iteration: int,
    ) -> LlmResponse:
        try:
            return self._provider.chat_with_tools(messages, definitions)
        except AgentError:
            logger.warning("react_loop.provider_failed", iteration=iteration)
            raise
        except Exception as exc:
            logger.warning("react_loop.provider_failed", iteration=iteration, error=str(exc))
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc

    def _split_output(self, response: LlmResponse) -> tuple[str, Optional[str]]:
        content = response.content or ""
        reasoning = response.reasoning
        if self._harmony_output and content:
            content, analysis = harmony.parse_output(content)
            reasoning = reasoning or analysis
        return content, reasoning

    @staticmethod
    def _execute(tools: ToolAccess, call: ToolCall) -> str:
        try:
            result = tools.call(call.name, call.arguments)
        except ToolError as exc:
            logger.warning("react_loop.tool_error", tool=call.name, error=str(exc))
            return f"Error executing tool '{call.name}': {exc}"
        logger.debug("react_loop.tool_executed", tool=call.name, call_id=call.id, result_length=len(result))
        return result

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_iterations": self._total_iterations,
            "total_tool_calls": self._total_tool_calls,
            "avg_iterations_per_run": self._total_iterations / max(1, self._total_runs),
        }

