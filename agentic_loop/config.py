"""Configuration management for the agentic loop."""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentic_loop.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.agentic-loop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "agentic.yaml"


class LoopConfig(BaseModel):
    """Settings for one agentic loop; shared read-only across invocations."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=10, ge=1)
    base_url: str = "http://localhost:11434/v1"
    model: str = "llama3.2"
    api_key: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4096
    request_timeout: float = 120.0


class SafetyConfig(BaseModel):
    """Input/output safety pipeline configuration."""

    blocked_commands: list[str] = [
        "rm -rf /",
        "rm -fr /",
        "rm -r /",
        "mkfs",
        ":(){:|:&};:",
        "dd if=/dev/zero",
        "shutdown",
        "reboot",
    ]
    command_keys: list[str] = ["command", "cmd", "script"]
    sensitive_paths: list[str] = [
        "/etc/shadow",
        "/etc/sudoers",
        "~/.ssh",
        "~/.aws/credentials",
    ]
    block_path_traversal: bool = True
    max_argument_chars: int = 20000
    max_output_chars: int = 50000
    redact_secrets: bool = True
    reject_private_keys: bool = True


class ToolsConfig(BaseModel):
    """Built-in tools configuration."""

    enabled: list[str] = ["list_dir", "read_file"]
    default_timeout: float = 30.0
    max_read_bytes: int = 100_000


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for the agentic loop."""

    loop: LoopConfig = Field(default_factory=LoopConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="AGENTIC_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file.

        Raises:
            ConfigurationError if the file is not valid YAML or fails validation
        """
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from the default YAML location."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
