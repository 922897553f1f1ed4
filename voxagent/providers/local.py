"""
Local provider: an in-process GGUF model through llama-cpp-python.

Messages are rendered with the model's own Jinja chat template (read from the
GGUF metadata, rendered in a sandbox; chatml when the model ships none).  When
tools are offered, decoding is constrained by a grammar built from a JSON
schema of the response envelope, so the model can only emit

    {"tool_calls": [{"name": "...", "arguments": {...}}]}
    {"content": "..."}

Template or grammar failures are configuration errors.  Output that still
fails to parse is treated as plain text: a turn is never dropped.
"""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog
from jinja2 import TemplateError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from voxagent.errors import ConfigError, ProviderError
from voxagent.providers.base import LlmProvider
from voxagent.tools.registry import ToolDefinition
from voxagent.types import ChatMessage, ChatRole, LlmResponse, TokenUsage, ToolCall

if TYPE_CHECKING:
    from voxagent.config import AgentConfig

logger = structlog.get_logger(__name__)

CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\n' + message['content'] + '<|im_end|>' + '\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\n' }}{% endif %}"
)
CHATML_STOP = ["<|im_end|>"]

TOOL_INSTRUCTIONS = (
    "You can call tools. To call one or more tools, reply with only a JSON object "
    '{{"tool_calls": [{{"name": <tool name>, "arguments": {{...}}}}]}}. '
    'To answer the user directly, reply with {{"content": <your answer>}}.\n'
    "Available tools:\n{tools}"
)


def envelope_schema(tools: list[ToolDefinition]) -> dict[str, Any]:
    """JSON schema of the constrained response: tool calls or a text answer."""
    call_variants = [
        {
            "type": "object",
            "properties": {
                "name": {"const": tool.name},
                "arguments": tool.input_schema or {"type": "object"},
            },
            "required": ["name", "arguments"],
        }
        for tool in tools
    ]
    return {
        "oneOf": [
            {
                "type": "object",
                "properties": {
                    "tool_calls": {
                        "type": "array",
                        "items": {"anyOf": call_variants},
                        "minItems": 1,
                    },
                },
                "required": ["tool_calls"],
            },
            {
                "type": "object",
                "properties": {"content": {"type": "string"}},
                "required": ["content"],
            },
        ]
    }


def parse_envelope(text: str) -> LlmResponse:
    """
    Parse constrained output.  Anything that is not a well-formed envelope is
    returned as free text.
    """
    stripped = text.strip()
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return LlmResponse(content=stripped)
    if not isinstance(data, dict):
        return LlmResponse(content=stripped)

    calls = []
    for raw in data.get("tool_calls") or []:
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
            continue
        arguments = raw.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                arguments = {}
        calls.append(ToolCall(
            id=f"call_{uuid.uuid4().hex[:12]}",
            name=raw["name"],
            arguments=arguments if isinstance(arguments, dict) else {},
        ))
    if calls:
        return LlmResponse(tool_calls=calls)
    if isinstance(data.get("content"), str):
        return LlmResponse(content=data["content"])
    return LlmResponse(content=stripped)


def _raise_exception(message: str) -> None:
    raise TemplateError(message)


class LocalProvider(LlmProvider):
    name = "local"
    supports_structured_output = True

    def __init__(
        self,
        llama: Any,
        template_source: Optional[str] = None,
        grammar_factory: Optional[Callable[[str], Any]] = None,
        temperature: Optional[float] = 0.7,
        max_tokens: int = 2048,
        bos_token: str = "",
        eos_token: str = "",
    ):
        self._llama = llama
        self._grammar_factory = grammar_factory
        self._temperature = temperature if temperature is not None else 0.7
        self._max_tokens = max_tokens
        self._bos_token = bos_token
        self._eos_token = eos_token

        if not template_source:
            logger.warning("local_provider.no_chat_template", fallback="chatml")
            template_source = CHATML_TEMPLATE
        self._stop = CHATML_STOP if template_source == CHATML_TEMPLATE else []
        self._supports_tool_role = "tool" in template_source

        env = ImmutableSandboxedEnvironment(trim_blocks=True, lstrip_blocks=True)
        env.globals["raise_exception"] = _raise_exception
        try:
            self._template = env.from_string(template_source)
        except TemplateError as e:
            raise ConfigError(f"Chat template failed to compile: {e}") from e

    @classmethod
    def from_config(cls, config: "AgentConfig") -> "LocalProvider":
        path = Path(config.model_path).expanduser()
        if not path.is_file():
            raise ConfigError(f"Model file not found: {path}")
        try:
            import llama_cpp
        except ImportError as e:
            raise ConfigError(
                "model_path is set but llama-cpp-python is not installed; "
                "install the 'local' extra."
            ) from e

        try:
            llama = llama_cpp.Llama(model_path=str(path), n_ctx=config.context_size, verbose=False)
        except (ValueError, RuntimeError) as e:
            raise ConfigError(f"Failed to load model {path}: {e}") from e

        metadata = getattr(llama, "metadata", None) or {}
        logger.info("local_provider.initialized", model_path=str(path), n_ctx=config.context_size)
        return cls(
            llama,
            template_source=metadata.get("tokenizer.chat_template"),
            grammar_factory=llama_cpp.LlamaGrammar.from_json_schema,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            bos_token=cls._token_text(llama, llama.token_bos()),
            eos_token=cls._token_text(llama, llama.token_eos()),
        )

    @staticmethod
    def _token_text(llama: Any, token: int) -> str:
        if token < 0:
            return ""
        return llama.detokenize([token]).decode("utf-8", errors="ignore")

    # -- rendering --------------------------------------------------------

    def _template_messages(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> list[dict[str, str]]:
        rendered: list[dict[str, str]] = []
        if tools:
            listing = "\n".join(
                f"- {tool.name}: {tool.description}\n  parameters: {json.dumps(tool.input_schema)}"
                for tool in tools
            )
            rendered.append({"role": "system", "content": TOOL_INSTRUCTIONS.format(tools=listing)})
        for message in messages:
            if message.tool_calls:
                envelope = {
                    "tool_calls": [{"name": c.name, "arguments": c.arguments} for c in message.tool_calls]
                }
                rendered.append({"role": "assistant", "content": json.dumps(envelope, ensure_ascii=False)})
            elif message.role == ChatRole.TOOL:
                if self._supports_tool_role:
                    rendered.append({"role": "tool", "content": message.content})
                else:
                    rendered.append({
                        "role": "user",
                        "content": f"[Result of {message.tool_name} ({message.tool_call_id})]\n{message.content}",
                    })
            else:
                rendered.append({"role": message.role.value, "content": message.content})
        return rendered

    def render_prompt(self, messages: list[ChatMessage], tools: list[ToolDefinition]) -> str:
        try:
            return self._template.render(
                messages=self._template_messages(messages, tools),
                add_generation_prompt=True,
                bos_token=self._bos_token,
                eos_token=self._eos_token,
            )
        except TemplateError as e:
            raise ConfigError(f"Chat template rendering failed: {e}") from e

    def build_grammar(self, tools: list[ToolDefinition]) -> Any:
        if not tools or self._grammar_factory is None:
            return None
        try:
            return self._grammar_factory(json.dumps(envelope_schema(tools)))
        except (ValueError, RuntimeError, KeyError, TypeError) as e:
            raise ConfigError(f"Failed to build tool-call grammar: {e}") from e

    # -- generation -------------------------------------------------------

    def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
    ) -> LlmResponse:
        prompt = self.render_prompt(messages, tools)
        grammar = self.build_grammar(tools)
        text, usage = self._generate(prompt, grammar)

        if not tools:
            return LlmResponse(content=text.strip(), usage=usage)
        response = parse_envelope(text)
        if not response.has_tool_calls and response.content == text.strip():
            logger.debug("local_provider.unconstrained_output", length=len(text))
        response.usage = usage
        return response

    def chat_with_schema(
        self,
        messages: list[ChatMessage],
        schema: dict[str, Any],
        schema_name: str,
    ) -> LlmResponse:
        if self._grammar_factory is None:
            raise ProviderError("Structured output needs a grammar factory")
        prompt = self.render_prompt(messages, [])
        try:
            grammar = self._grammar_factory(json.dumps(schema))
        except (ValueError, RuntimeError, KeyError, TypeError) as e:
            raise ConfigError(f"Failed to build grammar for '{schema_name}': {e}") from e
        text, usage = self._generate(prompt, grammar)
        return LlmResponse(content=text.strip(), usage=usage)

    def _generate(self, prompt: str, grammar: Any) -> tuple[str, TokenUsage]:
        logger.debug(
            "local_provider.generating",
            prompt_chars=len(prompt),
            approx_tokens=len(prompt) // 4,
            grammar=grammar is not None,
        )
        try:
            completion = self._llama.create_completion(
                prompt,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                grammar=grammar,
                stop=self._stop or None,
            )
        except (ValueError, RuntimeError) as e:
            raise ProviderError(f"Local generation failed: {e}") from e

        text = completion["choices"][0]["text"] if completion.get("choices") else ""
        raw_usage = completion.get("usage") or {}
        usage = TokenUsage(
            input_tokens=int(raw_usage.get("prompt_tokens") or 0),
            output_tokens=int(raw_usage.get("completion_tokens") or 0),
        )
        return text, usage

    def close(self) -> None:
        close = getattr(self._llama, "close", None)
        if close is not None:
            close()
