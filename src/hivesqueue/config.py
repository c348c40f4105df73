"""Configuration management - supports YAML config and environment fallback."""

import logging
from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hivesqueue.config_schema import GlobalSettings, HiveSqueueConfig, SSHConfig

logger = logging.getLogger(__name__)

# Default config file locations (in priority order)
DEFAULT_CONFIG_PATHS = [
    Path("./hivesqueue.yaml"),
    Path("./hivesqueue.yml"),
]

# EnvSettings fields that describe the SSH connection rather than GlobalSettings
_SSH_ENV_FIELDS = {"ssh_host", "ssh_user", "ssh_key_path", "ssh_password"}


class EnvSettings(BaseSettings):
    """Settings loaded from HIVESQUEUE_* environment variables or a .env file.

    Used when no YAML config is found. Settings left unset fall back to the
    GlobalSettings defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="HIVESQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ssh_host: str = Field(default="", description="Hostname of the cluster login node")
    ssh_user: str = Field(default="", description="SSH username")
    ssh_key_path: Path | None = Field(default=None, description="Path to SSH private key")
    ssh_password: str | None = Field(default=None, description="Password for keyboard-interactive login", repr=False)

    cluster_host: str | None = Field(default=None, description="Default cluster host")
    max_visible_jobs: int | None = Field(default=None, description="Maximum number of jobs to list")
    refresh_cooldown: float | None = Field(default=None, description="Seconds between non-forced refreshes")
    force_refresh_floor: float | None = Field(default=None, description="Seconds between refreshes, even when forced")
    max_consecutive_failures: int | None = Field(default=None, description="Failures before polling is paused")
    poll_interval: int | None = Field(default=None, description="Seconds between background polls")
    ssh_path: str | None = Field(default=None, description="Path to the ssh binary")
    connect_timeout: int | None = Field(default=None, description="ssh ConnectTimeout in seconds")
    command_timeout: float | None = Field(default=None, description="Hard limit in seconds for one remote command")
    module_init_script: str | None = Field(default=None, description="Remote script that defines 'module'")
    module_name: str | None = Field(default=None, description="Environment module for Slurm")
    module_command_path: str | None = Field(default=None, description="Path to modulecmd")
    remote_command: str | None = Field(default=None, description="Command run on the cluster to obtain job JSON")
    keychain_service: str | None = Field(default=None, description="Service name for stored passwords")
    server_host: str | None = Field(default=None, description="Host to bind the server to")
    server_port: int | None = Field(default=None, description="Port to bind the server to")


def find_config_file(config_path: Path | None = None) -> Path | None:
    """Find the configuration file.

    Args:
        config_path: Explicit path to config file. If provided, must exist.

    Returns:
        Path to config file, or None if not found.

    Raises:
        FileNotFoundError: If explicit config_path is provided but doesn't exist.
    """
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return config_path

    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path

    return None


def load_yaml_config(config_path: Path) -> HiveSqueueConfig:
    """Load and validate YAML configuration.

    Raises:
        ValidationError: If the YAML doesn't match the schema.
        yaml.YAMLError: If the YAML is malformed.
    """
    logger.info(f"Loading configuration from {config_path}")

    with open(config_path) as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raw_config = {}

    return HiveSqueueConfig.model_validate(raw_config)


def load_env_config() -> HiveSqueueConfig:
    """Build a configuration from environment variables."""
    env = EnvSettings()

    ssh_config = SSHConfig(
        host=env.ssh_host,
        user=env.ssh_user,
        key_path=env.ssh_key_path,
        password=env.ssh_password,
    )
    settings = GlobalSettings(
        **env.model_dump(exclude_none=True, exclude=_SSH_ENV_FIELDS),
    )
    return HiveSqueueConfig(ssh=ssh_config, settings=settings)


def load_config(config_path: Path | None = None) -> HiveSqueueConfig:
    """Load application configuration.

    Priority:
    1. Explicit config_path argument
    2. ./hivesqueue.yaml or ./hivesqueue.yml
    3. HIVESQUEUE_* environment variables / .env file

    Raises:
        FileNotFoundError: If explicit config_path doesn't exist.
        ValidationError: If config is invalid.
    """
    yaml_path = find_config_file(config_path)

    if yaml_path is not None:
        return load_yaml_config(yaml_path)

    logger.info("No config file found; using environment settings")
    return load_env_config()
