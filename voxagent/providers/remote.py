"""
Remote provider: OpenAI-style Responses API over httpx.

Tool calls travel as ``function_call`` items and observations as
``function_call_output`` items; on every turn the whole history is re-sent, so
each result item must carry the ``call_id`` of the call that produced it.

Chat requests are POSTs and are never retried.  ``check_available`` (a GET of
``/models``) is idempotent and goes through the retry helper.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Optional

import httpx
import structlog

from voxagent.errors import ProviderError
from voxagent.harness.retry import RetryConfig, with_retries
from voxagent.providers.base import LlmProvider
from voxagent.tools.registry import ToolDefinition
from voxagent.types import ChatMessage, ChatRole, LlmResponse, TokenUsage, ToolCall

if TYPE_CHECKING:
    from voxagent.config import AgentConfig

logger = structlog.get_logger(__name__)


def to_input_items(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for message in messages:
        if message.tool_calls:
            if message.content:
                items.append({"type": "message", "role": "assistant", "content": message.content})
            for call in message.tool_calls:
                items.append({
                    "type": "function_call",
                    "call_id": call.id,
                    "name": call.name,
                    "arguments": json.dumps(call.arguments, ensure_ascii=False),
                })
        elif message.role == ChatRole.TOOL:
            items.append({
                "type": "function_call_output",
                "call_id": message.tool_call_id,
                "output": message.content,
            })
        else:
            items.append({"type": "message", "role": message.role.value, "content": message.content})
    return items


def to_wire_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
            "strict": False,
        }
        for tool in tools
    ]


def extract_text(output: list[dict[str, Any]]) -> Optional[str]:
    for item in output:
        if item.get("type") not in ("message", "text"):
            continue
        if isinstance(item.get("text"), str):
            return item["text"]
        parts = [
            part.get("text", "")
            for part in item.get("content") or []
            if part.get("type") in ("output_text", "text")
        ]
        if parts:
            return "".join(parts)
    return None


def extract_reasoning(output: list[dict[str, Any]]) -> Optional[str]:
    """Reasoning content when present, else the reasoning summary."""
    items = [item for item in output if item.get("type") == "reasoning"]
    if not items:
        return None
    content = [part.get("text", "") for item in items for part in item.get("content") or []]
    if any(content):
        return "\n".join(p for p in content if p)
    summary = [part.get("text", "") for item in items for part in item.get("summary") or []]
    if any(summary):
        return "\n".join(p for p in summary if p)
    return None


def extract_tool_calls(output: list[dict[str, Any]]) -> list[ToolCall]:
    calls = []
    for item in output:
        if item.get("type") != "function_call":
            continue
        call_id, name = item.get("call_id"), item.get("name")
        if not call_id or not name:
            continue
        try:
            arguments = json.loads(item.get("arguments") or "{}")
        except json.JSONDecodeError:
            logger.warning("remote_provider.bad_arguments", name=name)
            arguments = {}
        calls.append(ToolCall(id=call_id, name=name, arguments=arguments if isinstance(arguments, dict) else {}))
    return calls


class RemoteProvider(LlmProvider):
    name = "responses"
    supports_structured_output = True

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: int = 2048,
        reasoning_effort: Optional[str] = None,
        timeout: float = 120.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._reasoning_effort = reasoning_effort
        self._retry_config = retry_config or RetryConfig()

    @classmethod
    def from_config(cls, config: "AgentConfig") -> "RemoteProvider":
        logger.info(
            "remote_provider.initialized",
            base_url=config.base_url,
            model=config.model,
            reasoning_effort=config.reasoning_effort,
        )
        return cls(
            base_url=config.base_url,
            model=config.model,
            api_key=config.api_key,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            reasoning_effort=config.reasoning_effort,
            timeout=config.request_timeout_seconds,
            retry_config=RetryConfig(
                max_retries=config.retry_max_retries,
                base_delay=config.retry_base_delay,
            ),
        )

    def build_request(self, messages: list[ChatMessage], tools: list[ToolDefinition]) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self._model,
            "input": to_input_items(messages),
            "max_output_tokens": self._max_tokens,
        }
        if self._temperature is not None:
            request["temperature"] = self._temperature
        if tools:
            request["tools"] = to_wire_tools(tools)
        if self._reasoning_effort:
            request["reasoning"] = {"effort": self._reasoning_effort, "summary": "auto"}
        return request

    def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> LlmResponse:
        request = self.build_request(messages, tools)
        logger.debug("remote_provider.request", items=len(request["input"]), tools=len(tools))
        return self.parse_response(self._post(request))

    def chat_with_schema(
        self,
        messages: list[ChatMessage],
        schema: dict[str, Any],
        schema_name: str,
    ) -> LlmResponse:
        request = self.build_request(messages, [])
        request["text"] = {
            "format": {"type": "json_schema", "name": schema_name, "schema": schema, "strict": True}
        }
        logger.debug("remote_provider.structured_request", items=len(request["input"]), schema=schema_name)
        return self.parse_response(self._post(request))

    def _post(self, request: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post("/responses", json=request)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "remote_provider.api_error",
                status=e.response.status_code,
                body=e.response.text[:500],
            )
            raise ProviderError(
                f"Responses API error {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("remote_provider.transport_error", error=str(e))
            raise ProviderError(f"Request to {self._client.base_url} failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Unparseable response body: {e}") from e

    @staticmethod
    def parse_response(body: dict[str, Any]) -> LlmResponse:
        if not isinstance(body, dict):
            raise ProviderError("Response body is not a JSON object")
        if body.get("status") == "incomplete":
            reason = (body.get("incomplete_details") or {}).get("reason", "unknown")
            raise ProviderError(
                f"Response incomplete: {reason}. Consider increasing max_output_tokens."
            )
        output = body.get("output")
        if not isinstance(output, list):
            raise ProviderError("Response has no output list")

        usage = None
        raw_usage = body.get("usage")
        if isinstance(raw_usage, dict):
            usage = TokenUsage(
                input_tokens=int(raw_usage.get("input_tokens") or 0),
                output_tokens=int(raw_usage.get("output_tokens") or 0),
            )

        reasoning = extract_reasoning(output)
        tool_calls = extract_tool_calls(output)
        if tool_calls:
            logger.info("remote_provider.tool_calls", count=len(tool_calls))
            return LlmResponse(
                content=extract_text(output) or "",
                tool_calls=tool_calls,
                reasoning=reasoning,
                usage=usage,
            )

        text = extract_text(output)
        if text is None:
            raise ProviderError("No text content or tool calls in response")
        return LlmResponse(content=text, reasoning=reasoning, usage=usage)

    def check_available(self) -> list[str]:
        """List model ids served at ``/models``, retrying transient failures."""

        def _get() -> httpx.Response:
            response = self._client.get("/models")
            response.raise_for_status()
            return response

        try:
            response = with_retries(_get, self._retry_config)
        except httpx.HTTPError as e:
            raise ProviderError(f"Endpoint {self._client.base_url} is not available: {e}") from e
        data = response.json().get("data") or []
        return [entry.get("id", "") for entry in data if isinstance(entry, dict)]

    def close(self) -> None:
        self._client.close()
