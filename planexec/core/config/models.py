from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


DEFAULT_CONTENT_TOOLS = {
    "create": "file_text",
    "append": "content",
    "insert": "new_str",
    "str_replace": "new_str",
    "sed": "new_str",
}


class ModelConfig(BaseModel):
    provider: str = "openai"
    name: str = "gpt-4o-mini"
    temperature: float = 0
    base_url: str | None = None  # OpenAI-compatible endpoint; default is the provider's


class LimitsConfig(BaseModel):
    incomplete_action_threshold: int = 30  # parser ticks before an unclosed tool envelope is accepted
    tool_wait_timeout_s: float = 60.0
    tool_poll_interval_s: float = 0.05
    progress_interval_s: float = 1.0
    summary_max_depth: int = 10
    summary_max_string: int = 1000
    summary_max_keys: int = 50


class RemoteToolConfig(BaseModel):
    name: str
    description: str
    url: str
    parameters: dict[str, Any] = Field(default_factory=dict)  # JSON schema of the arguments object
    timeout_s: float = 120.0


class OrchestratorConfig(BaseModel):
    env_file_path: str | None = ".env"
    model: ModelConfig = Field(default_factory=ModelConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    content_tools: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_CONTENT_TOOLS))
    tools: list[RemoteToolConfig] = Field(default_factory=list)
