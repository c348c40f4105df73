"""Pydantic models for YAML configuration schema."""

from pathlib import Path

from pydantic import BaseModel, Field, model_validator


class SSHConfig(BaseModel):
    """SSH connection configuration."""

    host: str = Field(default="", description="Hostname of the cluster login node")
    user: str = Field(default="", description="SSH username")
    key_path: Path | None = Field(
        default=None,
        description="Path to SSH private key",
    )
    password: str | None = Field(
        default=None,
        description="Password for keyboard-interactive login (prefer the secret store)",
        repr=False,
    )

    @property
    def key_path_resolved(self) -> Path | None:
        """Return the resolved SSH key path with ~ expansion."""
        return self.key_path.expanduser() if self.key_path else None


class GlobalSettings(BaseModel):
    """Global application settings."""

    cluster_host: str = Field(
        default="hive.hpc.ucdavis.edu",
        description="Default cluster host when no SSH host is configured",
    )
    max_visible_jobs: int = Field(
        default=20,
        ge=1,
        description="Maximum number of jobs to list",
    )
    refresh_cooldown: float = Field(
        default=30,
        ge=0,
        description="Minimum seconds between non-forced refreshes",
    )
    force_refresh_floor: float = Field(
        default=5,
        ge=0,
        description="Minimum seconds between refreshes, even when forced",
    )
    max_consecutive_failures: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed fetches before polling is paused",
    )
    poll_interval: int = Field(
        default=60,
        ge=5,
        description="Interval in seconds between background polls",
    )
    ssh_path: str = Field(
        default="/usr/bin/ssh",
        description="Path to the ssh binary",
    )
    connect_timeout: int = Field(
        default=10,
        ge=1,
        description="ssh ConnectTimeout in seconds",
    )
    command_timeout: float = Field(
        default=30,
        gt=0,
        description="Hard limit in seconds for one remote command, after which ssh is killed",
    )
    module_init_script: str | None = Field(
        default=None,
        description="Remote script sourced to make the 'module' command available",
    )
    module_name: str | None = Field(
        default=None,
        description="Environment module providing the Slurm binaries (e.g. slurm)",
    )
    module_command_path: str | None = Field(
        default=None,
        description="Path to modulecmd, used when the 'module' function is missing",
    )
    remote_command: str = Field(
        default="squeue --me --json",
        description="Command run on the cluster to obtain job JSON",
    )
    keychain_service: str = Field(
        default="hivesqueue",
        description="Service name used for passwords in the secret store",
    )
    server_host: str = Field(
        default="127.0.0.1",
        description="Host to bind the server to",
    )
    server_port: int = Field(
        default=8000,
        description="Port to bind the server to",
    )

    @model_validator(mode="after")
    def _check_refresh_floor(self) -> "GlobalSettings":
        if self.force_refresh_floor > self.refresh_cooldown:
            raise ValueError("force_refresh_floor must not exceed refresh_cooldown")
        return self


class HiveSqueueConfig(BaseModel):
    """Root configuration model for hivesqueue.yaml."""

    ssh: SSHConfig = Field(
        default_factory=SSHConfig,
        description="SSH connection to the cluster login node",
    )
    settings: GlobalSettings = Field(
        default_factory=GlobalSettings,
        description="Global application settings",
    )

    @property
    def host(self) -> str:
        """The SSH host, falling back to the default cluster host."""
        return self.ssh.host or self.settings.cluster_host
