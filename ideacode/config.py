"""Configuration management for ideacode."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, PrivateAttr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ideacode.exceptions import ConfigurationError


# Paths
def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME", "").strip()
    if xdg:
        return Path(xdg).expanduser() / "ideacode"
    return Path("~/.config/ideacode").expanduser()


DEFAULT_CONFIG_DIR = _default_config_dir()
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = DEFAULT_CONFIG_DIR / "conversations.db"
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model endpoint configuration."""

    provider: str = "openrouter"
    model: str = "anthropic/claude-sonnet-4"
    api_key: str = ""
    base_url: str = "https://openrouter.ai/api/v1"
    max_output_tokens: int = 8192
    summary_max_tokens: int = 4096
    temperature: float | None = None
    timeout: float = 120.0


class ContextConfig(BaseModel):
    """Context window configuration."""

    context_window_tokens: int = 128 * 1024
    budget_ratio: float = Field(default=0.85, gt=0.0, le=1.0)
    keep_last_n: int = Field(default=8, ge=1)


class RetryConfig(BaseModel):
    """Retry/backoff configuration for model calls."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    max_empty_retries: int = Field(default=3, ge=0)


class BashToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 30
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class WebFetchToolConfig(BaseModel):
    """Web fetch tool configuration."""

    max_chars: int = 40000
    timeout: float = 20.0


class WebSearchToolConfig(BaseModel):
    """Web search tool configuration."""

    api_key: str = ""
    base_url: str = "https://api.search.brave.com/res/v1/web/search"
    max_results: int = 8
    timeout: float = 20.0


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "read",
        "write",
        "edit",
        "glob",
        "grep",
        "bash",
        "web_fetch",
        "web_search",
    ]
    parallel: bool = True
    parallel_safe: list[str] = ["read", "glob", "grep", "web_fetch", "web_search"]
    max_result_chars: int = 3500
    bash: BashToolConfig = Field(default_factory=BashToolConfig)
    web_fetch: WebFetchToolConfig = Field(default_factory=WebFetchToolConfig)
    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)


class AgentConfig(BaseModel):
    """Turn loop limits."""

    max_round_trips: int = Field(default=50, ge=1)


class SessionConfig(BaseModel):
    """Conversation persistence configuration."""

    path: str = str(DEFAULT_DB_PATH)
    debounce_ms: int = 500
    auto_save: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"
    # Empty means stderr.
    file: str = ""


class Config(BaseSettings):
    """Main configuration for ideacode."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="IDEACODE_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    _source_path: Path | None = PrivateAttr(default=None)

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            config = cls()
            config._source_path = config_path
            return config

        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        try:
            config = cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config in {config_path}: {e}") from e
        config._source_path = config_path
        return config

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, then fill credentials from well-known env vars."""
        config = cls.from_yaml(path)
        config.apply_env_fallbacks()
        return config

    def apply_env_fallbacks(self) -> None:
        """Use OPENROUTER_API_KEY / MODEL / BRAVE_API_KEY when config is silent."""
        if not self.model.api_key.strip():
            self.model.api_key = os.environ.get("OPENROUTER_API_KEY", "").strip()
        env_model = os.environ.get("MODEL", "").strip()
        if env_model:
            self.model.model = env_model
        if not self.tools.web_search.api_key.strip():
            self.tools.web_search.api_key = (
                os.environ.get("BRAVE_API_KEY", "").strip()
                or os.environ.get("BRAVE_SEARCH_API_KEY", "").strip()
            )

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH

        # Ensure directory exists
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    @property
    def source_path(self) -> Path:
        """File this config was read from, or the one it would be read from."""
        return self._source_path or DEFAULT_CONFIG_PATH

    def persist(self, updates: dict[str, Any]) -> Path:
        """Apply nested section updates in memory, then merge them into the file.

        Only the given keys are written; the rest of the file is left as is.
        In-memory values stay applied even when the file cannot be written.

        Example: ``config.persist({"model": {"model": "openai/gpt-4o"}})``
        """
        _apply_updates(self, updates)
        path = self.source_path
        data: dict = {}
        if path.exists():
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigurationError(f"Config file {path} must contain a mapping")

        _merge_into(data, updates)

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        return path

    def budget_max_tokens(self, context_length: int | None = None) -> int:
        """Token budget for history + system prompt before each turn."""
        window = context_length or self.context.context_window_tokens
        return max(1, int(window * self.context.budget_ratio))


def _merge_into(data: dict[str, Any], updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        if isinstance(value, dict):
            current = data.get(key)
            if not isinstance(current, dict):
                current = {}
                data[key] = current
            _merge_into(current, value)
        else:
            data[key] = value


def _apply_updates(target: BaseModel, updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        if isinstance(value, dict):
            _apply_updates(getattr(target, key), value)
        else:
            setattr(target, key, value)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
