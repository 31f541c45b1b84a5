"""Pydantic models for YAML configuration schema."""

from pathlib import Path

from pydantic import BaseModel, Field, model_validator


class SSHConfig(BaseModel):
    """SSH connection configuration for the cluster login host."""

    host: str = Field(description="Hostname of the Slurm login node")
    port: int = Field(default=22, description="SSH port")
    known_hosts: Path | None = Field(
        default=None,
        description="Path to known_hosts file (None to disable host key checking)",
    )
    passphrase: str | None = Field(
        default=None,
        description="Passphrase protecting the generated user keys",
    )
    keys_path: Path = Field(
        default=Path("~/.cache/annolaunch/keys"),
        description="Directory holding generated per-user key pairs",
    )
    connect_timeout: float = Field(default=15, gt=0, description="Connection timeout in seconds")
    command_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Timeout for a single remote command (None for no limit)",
    )
    connection_ttl: float = Field(
        default=300,
        gt=0,
        description="Seconds an idle pooled connection stays open",
    )

    @property
    def keys_path_resolved(self) -> Path:
        """Return the resolved keys directory with ~ expansion."""
        return self.keys_path.expanduser()

    @property
    def known_hosts_resolved(self) -> Path | None:
        """Return the resolved known_hosts path with ~ expansion."""
        return self.known_hosts.expanduser() if self.known_hosts else None


class SlurmConfig(BaseModel):
    """Batch submission settings."""

    job_name: str = Field(
        default="annotat3dweb",
        pattern=r"^[A-Za-z0-9_.-]+$",
        description="Job name tag used for submissions and the recent-jobs filter",
    )
    gpu_options: list[int] = Field(
        default_factory=lambda: [1, 2, 4],
        min_length=1,
        description="GPU counts a user may request",
    )
    max_cpus: int = Field(default=1, ge=1, description="Maximum CPUs per instance")
    container_path: str = Field(description="Path to the Annotat3D container image on the cluster")
    port_range: tuple[int, int] = Field(
        default=(49152, 65535),
        description="Inclusive port range for spawned instances",
    )
    script_template: Path | None = Field(
        default=None,
        description="Override for the built-in annotat3d.sbatch template",
    )

    @model_validator(mode="after")
    def _check_ranges(self) -> "SlurmConfig":
        start, end = self.port_range
        if not (0 < start <= end <= 65535):
            raise ValueError(f"Invalid port range: {start}-{end}")
        if any(g < 0 for g in self.gpu_options):
            raise ValueError("gpu_options must be non-negative")
        return self

    @property
    def max_gpus(self) -> int:
        return max(self.gpu_options)


class StorageConfig(BaseModel):
    """Remote paths the file endpoints may touch."""

    allowed_roots: list[str] = Field(
        default_factory=list,
        description="Absolute path prefixes on the cluster (empty for no restriction)",
    )


class GlobalSettings(BaseModel):
    """Global application settings."""

    server_host: str = Field(
        default="127.0.0.1",
        description="Host to bind the server to",
    )
    server_port: int = Field(
        default=8000,
        description="Port to bind the server to",
    )
    poll_interval: float = Field(
        default=5,
        gt=0,
        description="Seconds between job report polls on the event stream",
    )
    user_header: str = Field(
        default="X-Remote-User",
        description="Request header carrying the authenticated username",
    )


class LauncherConfig(BaseModel):
    """Root configuration model for annolaunch.yaml."""

    ssh: SSHConfig = Field(description="SSH connection settings")
    slurm: SlurmConfig = Field(description="Batch submission settings")
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Remote file access settings",
    )
    settings: GlobalSettings = Field(
        default_factory=GlobalSettings,
        description="Global application settings",
    )
