"""Settings via pydantic-settings with TERMAGENT_ env prefix.

Nested sections use ``__`` as the env delimiter, e.g.
``TERMAGENT_AGENT__PROVIDER=openrouter``.  Provider credentials also read
the unprefixed OPENAI_API_KEY / OPENROUTER_API_KEY variables most users
already have exported.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ReasoningEffort = Literal["default", "none", "minimal", "low", "medium", "high"]


class RetrySettings(BaseModel):
    max_retries: int = 2
    base_delay: float = 0.5  # seconds
    max_delay: float = 8.0
    jitter: float = 1.0  # 0 disables randomization, 1 is full jitter


class OpenAISettings(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    use_flex_service_tier: bool = False


class OpenRouterSettings(BaseModel):
    api_key: str = ""
    base_url: str = "https://openrouter.ai/api/v1"
    referrer: str = "http://localhost"
    title: str = "termagent"


class CopilotSettings(BaseModel):
    model: str = "gpt-4.1"


class AgentSettings(BaseModel):
    provider: str = "openai"
    model: str = "gpt-5.1"
    reasoning_effort: ReasoningEffort = "default"
    temperature: float | None = None
    max_turns: int = 100
    retry_attempts: int = 2
    max_consecutive_tool_failures: int = 3
    retry: RetrySettings = Field(default_factory=RetrySettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    openrouter: OpenRouterSettings = Field(default_factory=OpenRouterSettings)
    copilot: CopilotSettings = Field(default_factory=CopilotSettings)


class CustomProviderSettings(BaseModel):
    """An OpenAI-compatible Chat Completions endpoint defined at runtime."""

    id: str
    label: str = ""
    base_url: str
    api_key: str = ""


class ShellSettings(BaseModel):
    timeout: int = 120
    max_output_chars: int = 10_000
    workspace_dir: str = "."


class LoggingSettings(BaseModel):
    log_level: Literal["debug", "info", "warn", "warning", "error", "security"] = "info"
    log_dir: str = ""
    disable_logging: bool = False
    console: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TERMAGENT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentSettings = Field(default_factory=AgentSettings)
    shell: ShellSettings = Field(default_factory=ShellSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    providers: list[CustomProviderSettings] = Field(default_factory=list)

    # Unprefixed aliases for the usual provider key variables
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")

    # HTTP timeouts (seconds)
    api_timeout_connect: float = 10.0
    api_timeout_read: float = 300.0

    @model_validator(mode="after")
    def _fill_provider_keys(self) -> Settings:
        if not self.agent.openai.api_key and self.openai_api_key:
            self.agent.openai.api_key = self.openai_api_key
        if not self.agent.openrouter.api_key and self.openrouter_api_key:
            self.agent.openrouter.api_key = self.openrouter_api_key
        return self


class SettingsService:
    """Dotted-key access to Settings, e.g. ``get("agent.openrouter.api_key")``."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings if settings is not None else Settings()

    @property
    def settings(self) -> Settings:
        return self._settings

    def get(self, key: str, default: Any = None) -> Any:
        node: Any = self._settings
        for part in key.split("."):
            if isinstance(node, dict):
                if part not in node:
                    return default
                node = node[part]
            elif isinstance(node, BaseModel) and part in type(node).model_fields:
                node = getattr(node, part)
            else:
                return default
        return default if node is None else node

    def set(self, key: str, value: Any) -> None:
        *parents, leaf = key.split(".")
        node: Any = self._settings
        for part in parents:
            node = node[part] if isinstance(node, dict) else getattr(node, part)
        if isinstance(node, dict):
            node[leaf] = value
        elif isinstance(node, BaseModel) and leaf in type(node).model_fields:
            setattr(node, leaf, value)
        else:
            raise KeyError(f"Unknown setting: {key}")
