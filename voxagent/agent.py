"""
Agent: the facade the voice shell talks to.

The Agent owns every subsystem and is the only thing the outside world holds:

    ConversationMemory   ordered history + State Capsule
    StateUpdater         rule-based capsule updates and backchannel decisions
    ToolRegistry         built-ins, lookup_skill, situation feed, MCP proxies
    SkillRegistry        prompt bundles and their tool allow-lists
    McpBridge            sync gateway to child-process tool servers
    EventRouter          debounced watcher summaries
    ReactLoop            provider + registry driven to a final answer

One coarse lock serializes whole turns (``step``, ``chat_once``,
``process_backchannel``, ``reset``): callers queue rather than interleave.
Registry and memory carry their own finer locks, so registration (skills, MCP
connect) and watcher intake never wait on a turn in progress.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog
from pydantic import ValidationError

from voxagent.config import AgentConfig
from voxagent.errors import AgentError, ConfigError
from voxagent.harness.keywords import KEYWORD_SCHEMA, SCHEMA_NAME, parse_keyword_response
from voxagent.harness.loop import LoopResult, ReactLoop
from voxagent.memory.conversation import ConversationMemory
from voxagent.memory.situation import SituationMessages, make_read_situation_tool
from voxagent.memory.updater import RuleBasedStateUpdater, StateUpdater
from voxagent.providers import harmony
from voxagent.providers.base import LlmProvider, create_provider
from voxagent.skills import SkillDefinition, SkillRegistry, make_lookup_skill_tool
from voxagent.skills.loader import discover_skills
from voxagent.tools.builtin import register_builtin_tools
from voxagent.tools.mcp.bridge import McpBridge
from voxagent.tools.mcp.server import McpServer
from voxagent.tools.registry import ToolRegistry
from voxagent.types import AgentResponse, ChatMessage, TokenUsage, WatcherSummary
from voxagent.watcher import EventRouter, make_report_event_tool

logger = structlog.get_logger(__name__)

BRIEF_RESPONSE_INSTRUCTION = (
    "Respond in 1-2 brief spoken sentences. Just summarize what happened concisely."
)


class Agent:
    """
    A voice agent: one provider, one memory, one tool surface.

    Build it with ``Agent.new(...)``.  The constructor accepts an explicit
    ``provider`` so tests and embedders can supply their own model backend.
    """

    def __init__(
        self,
        config: AgentConfig,
        provider: Optional[LlmProvider] = None,
        state_updater: Optional[StateUpdater] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self._config = config
        self._provider = provider or create_provider(config)
        self._updater = state_updater or RuleBasedStateUpdater(config.state_token_budget)
        self._memory = ConversationMemory(
            max_messages=config.max_history_messages,
            state_token_budget=config.state_token_budget,
        )
        self._system_prompt: Optional[str] = config.system_prompt
        self._turn_lock = threading.Lock()
        self._usage = TokenUsage()
        self._closed = False

        self._tools = ToolRegistry()
        self._skills = SkillRegistry()
        self._situation = SituationMessages(ttl_seconds=config.situation_ttl_seconds)
        self._working_dir = config.resolved_working_dir()
        self._http_client = http_client or httpx.Client(
            timeout=10.0,
            headers={"User-Agent": "voxagent/1.0"},
            follow_redirects=False,
        )
        self._router = EventRouter(
            debounce_seconds=config.watcher_debounce_ms / 1000.0,
            on_summary=self._record_situation,
        )
        register_builtin_tools(self._tools, self._working_dir, self._http_client)
        self._tools.register(make_lookup_skill_tool(self._skills))
        self._tools.register(make_read_situation_tool(self._situation))
        self._tools.register(make_report_event_tool(self._router))

        self._mcp = McpBridge(self._tools, timeout_seconds=config.mcp_timeout_seconds)
        self._loop = ReactLoop(
            self._provider,
            max_iterations=config.max_iterations,
            harmony_output=config.use_harmony_template,
        )

        if config.skills_dir:
            for skill in discover_skills(Path(config.skills_dir).expanduser()):
                self._skills.add(skill)

        logger.info(
            "agent.initialized",
            config=repr(config),
            provider=self._provider.name,
            tools=self._tools.count,
            skills=self._skills.count,
            working_dir=str(self._working_dir),
        )

    @classmethod
    def new(
        cls,
        config: Optional[AgentConfig] = None,
        provider: Optional[LlmProvider] = None,
        **overrides: Any,
    ) -> "Agent":
        """
        Validate configuration and build an Agent.

        ``overrides`` are AgentConfig fields; they are ignored when ``config``
        is given.  Invalid configuration raises ``ConfigError``.
        """
        if config is None:
            try:
                config = AgentConfig(**overrides)
            except ValidationError as exc:
                raise ConfigError(f"Invalid configuration: {exc}") from exc
        return cls(config, provider=provider)

    # -------------------------------------------------------------------------
    # Conversational turns
    # -------------------------------------------------------------------------

    def step(self, user_input: str) -> AgentResponse:
        """
        One full conversational turn.

        The capsule is updated from the input, the prompt is assembled
        (system prompt, capsule, history, skill catalog, new input), and the
        ReAct loop runs.  The user message and the reply are committed together
        only once the loop returns; on ``ProviderError`` memory is left exactly
        as it was before the call.

        With ``enable_tools`` off the model sees no tools, and a provider that
        supports structured output answers with a keyword reply whose terms are
        returned on ``AgentResponse.keywords``.
        """
        with self._turn_lock:
            self._ensure_open()
            previous = self._memory.state_capsule
            self._memory.update_state_capsule(self._updater.update(previous, user_input))

            user_message = ChatMessage.user(user_input)
            messages = self._memory.build_prompt(self._system_prompt, self._skills.catalog())
            messages.append(user_message)
            if self._config.use_harmony_template:
                messages = harmony.format_messages(messages)

            keywords: list[str] = []
            try:
                if self._config.enable_tools:
                    result = self._loop.run(messages, self._tools)
                else:
                    result, keywords = self._respond_without_tools(messages)
            except AgentError:
                self._memory.update_state_capsule(previous)
                raise

            self._memory.add_message(user_message)
            self._memory.add_message(ChatMessage.assistant(result.text))
            self._usage.add(result.usage)

            logger.info(
                "agent.step_complete",
                iterations=result.iterations,
                tools_used=result.tool_names_used,
                exhausted=result.exhausted,
                keywords=len(keywords),
                response_length=len(result.text),
            )
            return AgentResponse(
                content=result.text,
                reasoning_trace=result.reasoning,
                exhausted=result.exhausted,
                iterations=result.iterations,
                usage=result.usage,
                keywords=keywords,
            )

    def _respond_without_tools(self, messages: list[ChatMessage]) -> tuple[LoopResult, list[str]]:
        if not getattr(self._provider, "supports_structured_output", False):
            return self._loop.run(messages, self._tools.filtered(())), []
        result = self._loop.respond_structured(messages, KEYWORD_SCHEMA, SCHEMA_NAME)
        result.text, keywords = parse_keyword_response(result.text)
        return result, keywords

    def chat_once(self, user_input: str, skill_name: str) -> str:
        """
        A one-shot call restricted to a skill's tools.  Memory is not touched.
        """
        with self._turn_lock:
            self._ensure_open()
            skill = self._skills.get(skill_name)
            if skill is None:
                raise AgentError(f"Unknown skill: {skill_name}")

            messages: list[ChatMessage] = []
            if self._system_prompt:
                messages.append(ChatMessage.system(self._system_prompt))
            messages.append(ChatMessage.system(skill.prompt))
            messages.append(ChatMessage.system(BRIEF_RESPONSE_INSTRUCTION))
            messages.append(ChatMessage.user(user_input))

            result = self._loop.run(messages, self._tools.filtered(skill.tools))
            self._usage.add(result.usage)
            logger.info(
                "agent.chat_once_complete",
                skill=skill_name,
                iterations=result.iterations,
                exhausted=result.exhausted,
            )
            return result.text

    def process_backchannel(self, partial_input: str, pause_ms: int) -> Optional[str]:
        """
        Decide on a short acknowledgment without calling the model.

        When one is emitted the capsule absorbs the partial input and a
        backchannel marker is recorded; the acknowledgment text itself never
        enters history.
        """
        with self._turn_lock:
            self._ensure_open()
            ack = self._updater.should_backchannel(partial_input, pause_ms)
            if ack is None:
                return None
            capsule = self._updater.update(self._memory.state_capsule, partial_input)
            self._memory.update_state_capsule(capsule)
            self._memory.add_backchannel()
            logger.debug("agent.backchannel", ack=ack, pause_ms=pause_ms)
            return ack

    # -------------------------------------------------------------------------
    # Watcher pipeline
    # -------------------------------------------------------------------------

    def feed_watcher_event(self, event_json: str) -> None:
        """Queue one watcher event.  Malformed events raise ``AgentError``."""
        self._router.feed_json(event_json)

    def drain_watcher_summaries(self) -> list[WatcherSummary]:
        return self._router.drain()

    def _record_situation(self, text: str, session_ids: list[str]) -> None:
        self._situation.push(text, source="watcher", session_id=session_ids[0] if session_ids else "")

    # -------------------------------------------------------------------------
    # Skills and MCP servers
    # -------------------------------------------------------------------------

    def add_skill(
        self,
        name: str,
        description: str,
        prompt: str,
        tools: Optional[list[str]] = None,
    ) -> None:
        self._skills.add(SkillDefinition(name=name, description=description, prompt=prompt, tools=list(tools or [])))

    def add_mcp_server(
        self,
        name: str,
        command: str,
        args: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> list[str]:
        """Connect a stdio MCP server and register its tools.  Raises ``McpError``."""
        return self._mcp.connect(name, command, args, env=env)

    def add_mcp_http_server(self, name: str, url: str, api_key: Optional[str] = None) -> list[str]:
        return self._mcp.connect_http(name, url, api_key=api_key)

    def disconnect_mcp_server(self, name: str) -> bool:
        return self._mcp.disconnect(name)

    def mcp_server(self, name: str = "voxagent") -> McpServer:
        """An MCP server exposing this agent's tool surface to other clients."""
        return McpServer(self._tools, name=name)

    # -------------------------------------------------------------------------
    # State and inspection
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        """Clear history and the capsule.  Tools and skills are kept."""
        with self._turn_lock:
            self._memory.clear()
        logger.info("agent.reset")

    def set_system_prompt(self, prompt: Optional[str]) -> None:
        with self._turn_lock:
            self._system_prompt = prompt or None

    def get_conversation_history(self) -> str:
        return self._memory.to_json()

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(self._usage.input_tokens, self._usage.output_tokens)

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def memory(self) -> ConversationMemory:
        return self._memory

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def skills(self) -> SkillRegistry:
        return self._skills

    @property
    def situation(self) -> SituationMessages:
        return self._situation

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise AgentError("Agent is closed")

    def close(self) -> None:
        """Release every subsystem.  Waits for a turn in progress to finish."""
        with self._turn_lock:
            if self._closed:
                return
            self._closed = True
        self._router.close()
        self._mcp.close_all()
        self._provider.close()
        self._http_client.close()
        logger.info("agent.closed")

    def __enter__(self) -> "Agent":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
