"""Settings via pydantic-settings with CONDUCTOR_ env prefix.

The model API key uses an unprefixed alias (MODEL_API_KEY) so the same
.env file can be shared with other tools talking to the endpoint.
MCP servers are configured as a JSON list in CONDUCTOR_MCP_SERVERS.
"""

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = """\
You are Conductor, an AI assistant that helps with file editing, coding tasks
and system operations. Execute requests efficiently and accurately.

When operations fail:
1. Read the error message carefully, it often contains the solution
2. Identify the root cause, not just the symptom
3. Try an alternative approach instead of repeating the failed operation
4. After 2-3 different attempts, explain the issue to the user

Be concise. Summarize what was done without unnecessary elaboration."""


class McpServerConfig(BaseModel):
    """One external MCP server to connect to at session start."""

    name: str
    transport: Literal["stdio", "http"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)  # http transport only

    @model_validator(mode="after")
    def _validate_transport(self) -> "McpServerConfig":
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"MCP server '{self.name}': stdio transport requires command")
        if self.transport == "http" and not self.url:
            raise ValueError(f"MCP server '{self.name}': http transport requires url")
        return self


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONDUCTOR_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    workspace_dir: str = "/tmp/conductor-workspace"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Model endpoint (OpenAI-compatible chat completions)
    api_key: str = Field("", validation_alias="MODEL_API_KEY")
    api_base_url: str = "https://api.z.ai/api/coding/paas/v4"
    model: str = "glm-4.7"
    max_tokens: int = 1536
    temperature: float = 0.7
    thinking_enabled: bool = True
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 360  # seconds

    # Orchestration
    max_tool_rounds: int = 400

    # Context management
    context_max_messages: int = 50
    context_max_tokens: int = 60000
    context_keep_recent: int = 20
    summarization_enabled: bool = True
    summary_model: str | None = None  # None = same as model

    # Stuck detection
    max_consecutive_failures: int = 3
    stuck_detection_window: int = 5
    loop_threshold: int | None = None  # None = window - 1
    max_reflections_per_turn: int = 2

    # MCP
    mcp_enabled: bool = True
    mcp_servers: list[McpServerConfig] = Field(default_factory=list)
    mcp_connect_timeout: float = 10.0

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.context_keep_recent < 1:
            raise ValueError("context_keep_recent must be >= 1")
        # Room for the system message and the summary message
        if self.context_keep_recent + 2 > self.context_max_messages:
            raise ValueError(
                f"context_keep_recent ({self.context_keep_recent}) must be at most "
                f"context_max_messages - 2 ({self.context_max_messages - 2})"
            )
        if self.stuck_detection_window < 2:
            raise ValueError("stuck_detection_window must be >= 2")
        if self.loop_threshold is not None and not (
            1 <= self.loop_threshold <= self.stuck_detection_window
        ):
            raise ValueError(
                f"loop_threshold ({self.loop_threshold}) must be between 1 and "
                f"stuck_detection_window ({self.stuck_detection_window})"
            )
        if self.max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be >= 1")
        return self
