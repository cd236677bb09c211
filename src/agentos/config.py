"""Configuration management for Agentos.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to AgentosConfig constructor)
2. Environment variables (AGENTOS_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [sandbox]
    image = "agentos-sandbox:latest"
    max_containers = 10

    [status]
    heartbeat_interval_seconds = 15

Example environment variable override:
    AGENTOS_DATABASE__URL="sqlite+aiosqlite:////var/lib/agentos/agentos.db"
    AGENTOS_SANDBOX__MAX_CONTAINERS=5
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Session store connection configuration.

    Attributes:
        url: SQLAlchemy async database URL
        echo: Enable SQL query logging
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_DATABASE__",
        extra="forbid",
    )

    url: str = Field(
        default="sqlite+aiosqlite:///~/.agentos/agentos.db",
        description="Async SQLAlchemy connection URL",
    )
    echo: bool = Field(default=False)


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
        quiet_loggers: Third-party loggers held at WARNING unless level is DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)
    quiet_loggers: list[str] = Field(
        default_factory=lambda: ["urllib3", "docker", "git", "aiosqlite", "sse_starlette"]
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class WorktreeConfig(BaseSettings):
    """Git worktree configuration.

    Attributes:
        base_path: Directory under which session worktrees are created
        max_worktrees: Maximum number of managed worktrees on this host
        branch_prefix: Namespace prepended to generated branch names
        git_timeout_seconds: Timeout for worktree add/remove commands
        submodule_timeout_seconds: Timeout for submodule initialization
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_WORKTREE__",
        extra="forbid",
    )

    base_path: Path = Field(default=Path("~/.agent-os/worktrees"))
    max_worktrees: int = Field(default=50, ge=1, le=500)
    branch_prefix: str = Field(default="feature")
    git_timeout_seconds: int = Field(default=30, ge=1, le=600)
    submodule_timeout_seconds: int = Field(default=120, ge=1, le=1800)


class SandboxConfig(BaseSettings):
    """Sandbox (container or native) configuration.

    Attributes:
        mode: Execution backend, "container" or "native"
        image: Container image used for sandboxed sessions
        max_containers: Global cap on concurrently running sandbox containers
        memory_limit: Container memory limit (docker notation)
        cpu_limit: Number of CPUs available to a container
        pids_limit: Maximum processes inside a container
        rootless: Prefer the rootless Docker socket
        create_timeout_seconds: Overall bound on container creation
        health_timeout_seconds: Bound on each health probe step
        destroy_retries: Stop/remove attempts before forcing removal
        audit_log_file: Optional JSONL file for security events
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_SANDBOX__",
        extra="forbid",
    )

    mode: str = Field(default="container")
    image: str = Field(default="agentos-sandbox:latest")
    max_containers: int = Field(default=20, ge=1, le=200)
    memory_limit: str = Field(default="4g")
    cpu_limit: float = Field(default=2.0, gt=0.0, le=64.0)
    pids_limit: int = Field(default=512, ge=16, le=65536)
    rootless: bool = Field(default=False)
    create_timeout_seconds: int = Field(default=180, ge=10, le=1800)
    health_timeout_seconds: int = Field(default=10, ge=1, le=120)
    destroy_retries: int = Field(default=3, ge=1, le=10)
    audit_log_file: Path | None = Field(default=None)

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate sandbox mode is recognized."""
        valid_modes = {"container", "native"}
        v_lower = v.lower()
        if v_lower not in valid_modes:
            raise ValueError(f"Invalid sandbox mode: {v}. Must be one of {valid_modes}")
        return v_lower


class SetupConfig(BaseSettings):
    """Dependency bootstrap configuration.

    Attributes:
        install_timeout_seconds: Timeout for each setup/install command
        copy_env_files: Copy .env files from the source repository
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_SETUP__",
        extra="forbid",
    )

    install_timeout_seconds: int = Field(default=300, ge=10, le=3600)
    copy_env_files: bool = Field(default=True)


class StatusConfig(BaseSettings):
    """Status broadcast hub configuration.

    Attributes:
        heartbeat_interval_seconds: Interval between heartbeat events
        max_subscribers: Subscriber cap; the oldest is evicted beyond it
        max_statuses: Snapshot cap; the oldest entry is evicted beyond it
        subscriber_queue_size: Bounded queue length per subscriber
        stale_after_seconds: Age after which non-terminal snapshots are stale
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_STATUS__",
        extra="forbid",
    )

    heartbeat_interval_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    max_subscribers: int = Field(default=1000, ge=1, le=100000)
    max_statuses: int = Field(default=10000, ge=1, le=1000000)
    subscriber_queue_size: int = Field(default=100, ge=1, le=10000)
    stale_after_seconds: int = Field(default=600, ge=10, le=86400)


class TerminalConfig(BaseSettings):
    """Terminal multiplexer configuration.

    Attributes:
        socket_name: tmux socket used for every agent session
        command_timeout_seconds: Timeout for each tmux command
        attach_timeout_seconds: Maximum wait for a display slot lock
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_TERMINAL__",
        extra="forbid",
    )

    socket_name: str = Field(default="agentos")
    command_timeout_seconds: int = Field(default=10, ge=1, le=120)
    attach_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)


class WebConfig(BaseSettings):
    """Web API configuration.

    Attributes:
        host: Bind host address
        port: Bind port number
        cors_origins: Allowed CORS origins
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_WEB__",
        extra="forbid",
    )

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3011, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class AgentosConfig(BaseSettings):
    """Root configuration for Agentos.

    Aggregates all subsystem configurations. Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (AGENTOS_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        AGENTOS_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOS_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    setup: SetupConfig = Field(default_factory=SetupConfig)
    status: StatusConfig = Field(default_factory=StatusConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    web: WebConfig = Field(default_factory=WebConfig)


def load_config(config_path: Path | None = None) -> AgentosConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./agentos.toml (current directory)
    3. ~/.config/agentos/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        AgentosConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "agentos.toml",
            Path.home() / ".config" / "agentos" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    try:
        return AgentosConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
