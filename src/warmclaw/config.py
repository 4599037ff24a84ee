"""Configuration loader for WarmClaw.

Loads config.yml and credentials.yml at startup and validates them into
Pydantic models. Any missing required field raises at boot, not at runtime.
"""

from __future__ import annotations

import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


class AssistantConfig(BaseModel):
    """Configuration for the assistant personality.

    Attributes:
        name: The assistant's name used in trigger patterns and message prefixes.
        has_own_number: True if the bot has its own dedicated account.
            When False, messages are prefixed with the assistant name.
    """

    name: str = "Andy"
    has_own_number: bool = False


class TimingConfig(BaseModel):
    """Timing intervals in milliseconds.

    Attributes:
        poll_interval_ms: How often the delivery loop checks for new messages.
        idle_timeout_ms: How long to keep a container alive after its last output.
        ipc_poll_interval_ms: How often to scan IPC directories for new files.
        shutdown_grace_ms: How long shutdown waits for containers to exit
            before force-terminating them.
    """

    poll_interval_ms: int = 2000
    idle_timeout_ms: int = 1800000
    ipc_poll_interval_ms: int = 1000
    shutdown_grace_ms: int = 10000

    @property
    def poll_interval_s(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000.0

    @property
    def idle_timeout_s(self) -> float:
        """Idle timeout in seconds."""
        return self.idle_timeout_ms / 1000.0

    @property
    def ipc_poll_interval_s(self) -> float:
        """IPC poll interval in seconds."""
        return self.ipc_poll_interval_ms / 1000.0


class ContainerConfig(BaseModel):
    """Container runtime configuration.

    Attributes:
        runtime: Container CLI binary ('container' or 'docker').
        image: Agent image name.
        timeout_ms: Hard timeout for container execution in milliseconds.
        max_output_size_bytes: Maximum bytes to buffer from container stdout/stderr.
        max_concurrent: Global ceiling on active plus standby containers.
        model: Optional model override passed to every agent.
    """

    runtime: str = "container"
    image: str = "warmclaw-agent:latest"
    timeout_ms: int = 1800000
    max_output_size_bytes: int = 10485760
    max_concurrent: int = Field(default=5, ge=1)
    model: str | None = None

    @property
    def timeout_s(self) -> float:
        """Timeout in seconds."""
        return self.timeout_ms / 1000.0


class WarmPoolConfig(BaseModel):
    """Standby container pool configuration.

    Attributes:
        enabled: Pre-spawn one standby container per registered chat.
        respawn_delay_ms: Settle delay before a standby is respawned after
            its container exits.
    """

    enabled: bool = True
    respawn_delay_ms: int = 2000

    @property
    def respawn_delay_s(self) -> float:
        """Respawn delay in seconds."""
        return self.respawn_delay_ms / 1000.0


class PathsConfig(BaseModel):
    """Filesystem path configuration (relative to project root).

    Attributes:
        store_dir: Directory for the SQLite database.
        groups_dir: Directory for per-group workspaces.
        data_dir: Directory for IPC files and session state.
    """

    store_dir: str = "store"
    groups_dir: str = "groups"
    data_dir: str = "data"


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        file: Path to the log file (relative to project root).
    """

    level: str = "INFO"
    file: str = "logs/warmclaw.log"

    @field_validator("level")
    @classmethod
    def validate_level(_cls, v: str) -> str:  # noqa: N804
        """Validate log level is a known value."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Invalid log level '{v}'. Must be one of: {valid}")
        return v.upper()


class AppConfig(BaseModel):
    """Root application configuration loaded from config.yml.

    Attributes:
        assistant: Assistant personality settings.
        timing: Timing interval settings.
        container: Container runtime settings.
        warm_pool: Standby pool settings.
        paths: Filesystem path settings.
        logging: Logging settings.
        timezone: Timezone string passed through to agents.
    """

    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    container: ContainerConfig = Field(default_factory=ContainerConfig)
    warm_pool: WarmPoolConfig = Field(default_factory=WarmPoolConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    timezone: str = "America/New_York"

    @property
    def trigger_pattern(self) -> re.Pattern[str]:
        """Compiled regex for matching trigger mentions."""
        escaped = re.escape(self.assistant.name)
        return re.compile(rf"^@{escaped}\b", re.IGNORECASE)


class Credentials(BaseModel):
    """Secret credentials loaded from credentials.yml (gitignored).

    Attributes:
        anthropic_api_key: API key forwarded to agent containers.
        claude_code_oauth_token: OAuth token forwarded to agent containers.
    """

    anthropic_api_key: str = ""
    claude_code_oauth_token: str = ""


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load and validate application configuration from config.yml.

    Args:
        config_path: Path to config.yml. Defaults to config.yml in the current directory.

    Returns:
        Validated AppConfig instance.

    Raises:
        FileNotFoundError: If config.yml does not exist.
        ValueError: If config values fail Pydantic validation.
    """
    path = config_path or Path("config.yml")
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with path.open() as f:
        data = yaml.safe_load(f) or {}
    return AppConfig.model_validate(data)


def load_credentials(credentials_path: Path | None = None) -> Credentials:
    """Load secrets from credentials.yml (gitignored).

    Args:
        credentials_path: Path to credentials.yml. Defaults to credentials.yml
            in the current directory.

    Returns:
        Credentials instance. Returns empty credentials if file does not exist
        (allows running without secrets for testing).
    """
    path = credentials_path or Path("credentials.yml")
    if not path.exists():
        return Credentials()
    with path.open() as f:
        data = yaml.safe_load(f) or {}
    return Credentials.model_validate(data)
