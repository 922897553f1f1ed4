# voxagent/config.py
"""
Configuration for the agent runtime.

All configuration flows through this module.  Values come from constructor
arguments or environment variables (via a .env file) and are validated with
Pydantic.  The resulting ``AgentConfig`` is frozen: it is consumed once when the
Agent is built, and switching providers means building a new Agent.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings
import structlog

from voxagent.errors import ConfigError
from voxagent.memory.capsule import MIN_TOKEN_BUDGET

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above the package), so
# the config works regardless of the caller's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful voice assistant. Be concise and natural in your "
    "responses, as they will be spoken aloud. Avoid long explanations unless "
    "specifically asked. You have access to tools for file operations and can "
    "help with various tasks."
)


class AgentConfig(BaseSettings):
    """
    Immutable snapshot of everything the Agent needs at construction.

    Exactly one of ``model_path`` (local in-process model) or ``base_url``
    (remote HTTP API) selects the provider.  Both or neither is a
    ``ConfigError``.
    """

    model_path: Optional[str] = Field(None, alias="VOXAGENT_MODEL_PATH")
    base_url: Optional[str] = Field(None, alias="VOXAGENT_BASE_URL")
    api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    remote_api: Literal["responses", "anthropic"] = Field(
        "responses", alias="VOXAGENT_REMOTE_API"
    )
    model: str = Field("gpt-4o-mini", alias="VOXAGENT_MODEL")
    use_harmony_template: bool = Field(True, alias="VOXAGENT_USE_HARMONY_TEMPLATE")
    temperature: Optional[float] = Field(0.7, alias="VOXAGENT_TEMPERATURE")
    max_tokens: int = Field(2048, alias="VOXAGENT_MAX_TOKENS")
    language: Optional[str] = Field("en", alias="VOXAGENT_LANGUAGE")
    working_dir: Optional[str] = Field(None, alias="VOXAGENT_WORKING_DIR")
    reasoning_effort: Optional[Literal["minimal", "low", "medium", "high"]] = Field(
        None, alias="VOXAGENT_REASONING_EFFORT"
    )
    system_prompt: Optional[str] = Field(None, alias="VOXAGENT_SYSTEM_PROMPT")
    skills_dir: Optional[str] = Field(None, alias="VOXAGENT_SKILLS_DIR")

    # Runtime limits
    max_iterations: int = Field(10, alias="VOXAGENT_MAX_ITERATIONS")
    context_size: int = Field(8192, alias="VOXAGENT_CONTEXT_SIZE")
    request_timeout_seconds: float = Field(120.0, alias="VOXAGENT_REQUEST_TIMEOUT_SECONDS")
    mcp_timeout_seconds: float = Field(20.0, alias="VOXAGENT_MCP_TIMEOUT_SECONDS")
    watcher_debounce_ms: int = Field(1500, alias="VOXAGENT_WATCHER_DEBOUNCE_MS")
    situation_ttl_seconds: float = Field(60.0, alias="VOXAGENT_SITUATION_TTL_SECONDS")
    max_history_messages: int = Field(100, alias="VOXAGENT_MAX_HISTORY_MESSAGES")
    state_token_budget: int = Field(200, alias="VOXAGENT_STATE_TOKEN_BUDGET")
    # Off: no tool surface; replies carry speech-recognition keywords when the
    # provider supports structured output.
    enable_tools: bool = Field(True, alias="VOXAGENT_ENABLE_TOOLS")

    # Availability-check retries (GET only; chat POSTs are never retried)
    retry_max_retries: int = Field(2, alias="VOXAGENT_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="VOXAGENT_RETRY_BASE_DELAY")

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "frozen": True,
    }

    @field_validator("model_path", "base_url", "api_key", "anthropic_api_key", "skills_dir", mode="before")
    @classmethod
    def blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        return min(2.0, max(0.0, float(value)))

    @field_validator("max_tokens", "max_iterations", "context_size", "max_history_messages")
    @classmethod
    def at_least_one(cls, value: int) -> int:
        return max(1, int(value))

    @field_validator("state_token_budget")
    @classmethod
    def sane_state_budget(cls, value: int) -> int:
        return max(MIN_TOKEN_BUDGET, int(value))

    @model_validator(mode="after")
    def require_single_provider(self) -> "AgentConfig":
        if self.model_path and self.base_url:
            raise ConfigError(
                "Both model_path and base_url are set. Configure exactly one: "
                "model_path for local inference or base_url for a remote API."
            )
        if not self.model_path and not self.base_url:
            raise ConfigError(
                "Neither model_path nor base_url is set. Configure exactly one: "
                "model_path for local inference or base_url for a remote API."
            )
        return self

    @property
    def is_local(self) -> bool:
        return self.model_path is not None

    def resolved_working_dir(self) -> Path:
        if self.working_dir:
            return Path(self.working_dir).expanduser().resolve()
        return Path.cwd()

    def __repr__(self) -> str:
        return (
            f"AgentConfig(provider={'local' if self.is_local else self.remote_api}, "
            f"model={self.model!r}, max_tokens={self.max_tokens}, "
            f"max_iterations={self.max_iterations})"
        )
