# conduit/config.py
"""
Configuration for Conduit.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Components receive the
slice of configuration they need; nothing reads the environment on its own.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Optional

import structlog
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above conduit/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class ClaudeConfig(BaseSettings):
    """Configuration for the Claude API connection (the Model Channel)."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="CONDUIT_MODEL")
    max_tokens: int = Field(1024, alias="CONDUIT_MAX_TOKENS")
    system_prompt: str = Field("", alias="CONDUIT_SYSTEM_PROMPT")
    request_timeout_seconds: float = Field(120.0, alias="CONDUIT_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(3, alias="CONDUIT_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="CONDUIT_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="CONDUIT_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="CONDUIT_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="CONDUIT_RETRY_JITTER_RANGE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def require_api_key(self) -> "ClaudeConfig":
        if isinstance(self.api_key, str):
            self.api_key = self.api_key.strip() or None
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY is not set")
        return self

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "ClaudeConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        return self


class ToolPolicySettings(BaseModel):
    """One configured tool policy. Missing fields fall back to the configured default."""

    requires_approval: Optional[bool] = None
    max_calls_per_window: Optional[int] = Field(None, ge=0)

    model_config = {"extra": "forbid"}


class PolicyConfig(BaseSettings):
    """Configuration for the Policy Gate — per-tool approval and rate limits."""

    # JSON object: {"tool-name": {"requires_approval": bool, "max_calls_per_window": int}}
    tool_policies: Annotated[dict[str, ToolPolicySettings], NoDecode] = Field(
        default_factory=dict,
        alias="CONDUIT_TOOL_POLICIES",
    )
    default_requires_approval: bool = Field(True, alias="CONDUIT_DEFAULT_REQUIRES_APPROVAL")
    default_max_calls_per_window: int = Field(10, alias="CONDUIT_DEFAULT_MAX_CALLS_PER_WINDOW")
    rate_window_seconds: float = Field(60.0, alias="CONDUIT_RATE_WINDOW_SECONDS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @field_validator("tool_policies", mode="before")
    @classmethod
    def parse_tool_policies(cls, value: object) -> object:
        """Accept a JSON object string (blank means none) as well as a mapping from code."""
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return {}
            return json.loads(stripped)
        return value

    @model_validator(mode="after")
    def normalize_limits(self) -> "PolicyConfig":
        self.default_max_calls_per_window = max(0, int(self.default_max_calls_per_window))
        self.rate_window_seconds = max(1.0, float(self.rate_window_seconds))
        return self


class ConversationConfig(BaseSettings):
    """Configuration for the Conversation Driver."""

    # 0 = unbounded
    max_turns: int = Field(0, alias="CONDUIT_MAX_TURNS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ConversationConfig":
        self.max_turns = max(0, int(self.max_turns))
        return self

    @property
    def turn_limit(self) -> Optional[int]:
        return self.max_turns or None


class MCPConfig(BaseSettings):
    """Configuration for the MCP server Conduit connects to."""

    server: str = Field("", alias="CONDUIT_MCP_SERVER")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    def get_server(self) -> Optional[dict[str, Any]]:
        """Parse the MCP server configuration from its JSON string."""
        if not self.server.strip():
            return None
        try:
            parsed = json.loads(self.server)
        except json.JSONDecodeError as exc:
            logger.warning("config.mcp_server_unparseable", error=str(exc))
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed


class ConduitConfig:
    """
    Master configuration that composes all subsystem configs.

    The Claude section is loaded lazily so commands that never talk to the
    model (listing tools, for instance) work without an API key.
    """

    def __init__(self):
        self.policy = PolicyConfig()
        self.conversation = ConversationConfig()
        self.mcp = MCPConfig()
        self._claude: Optional[ClaudeConfig] = None

    @property
    def claude(self) -> ClaudeConfig:
        if self._claude is None:
            self._claude = ClaudeConfig()
        return self._claude

    def __repr__(self) -> str:
        return (
            f"ConduitConfig(max_turns={self.conversation.max_turns}, "
            f"policies={len(self.policy.tool_policies)}, "
            f"rate_window={self.policy.rate_window_seconds}s)"
        )
