"""Configuration management - supports YAML config and environment fallback."""

import logging
from pathlib import Path

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from annolaunch.config_schema import (
    LauncherConfig,
    SlurmConfig,
    SSHConfig,
    StorageConfig,
)

logger = logging.getLogger(__name__)

# Default config file locations (in priority order)
DEFAULT_CONFIG_PATHS = [
    Path("./annolaunch.yaml"),
    Path("./annolaunch.yml"),
]


class EnvSettings(BaseSettings):
    """Settings loaded from environment variables or a .env file.

    Variable names match the deployment environment of the web launcher.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ssh_host: str = Field(description="Hostname of the Slurm login node")
    ssh_port: int = Field(default=22, description="SSH port")
    ssh_passphrase: str | None = Field(default=None, description="Passphrase for generated keys")
    ssh_keys_path: Path = Field(
        default=Path("~/.cache/annolaunch/keys"),
        description="Directory holding generated per-user key pairs",
    )
    annotat3d_container_path: str = Field(description="Annotat3D container image on the cluster")
    annotat3d_port_range0: int = Field(default=49152, description="First port for instances")
    annotat3d_port_range1: int = Field(default=65535, description="Last port for instances")
    slurm_gpu_options: str = Field(default="1,2,4", description="Comma-separated GPU counts")
    slurm_max_cpus: int = Field(default=1, description="Maximum CPUs per instance")
    storage_path: str | None = Field(default=None, description="Root of user-visible storage")

    def gpu_options(self) -> list[int]:
        return [int(g) for g in self.slurm_gpu_options.split(",") if g.strip()]


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

    # Search default locations
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path

    return None


def load_yaml_config(config_path: Path) -> LauncherConfig:
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

    return LauncherConfig.model_validate(raw_config)


def load_env_config() -> LauncherConfig:
    """Build the configuration from environment variables."""
    env = EnvSettings()

    ssh_config = SSHConfig(
        host=env.ssh_host,
        port=env.ssh_port,
        passphrase=env.ssh_passphrase,
        keys_path=env.ssh_keys_path,
    )

    slurm_config = SlurmConfig(
        container_path=env.annotat3d_container_path,
        port_range=(env.annotat3d_port_range0, env.annotat3d_port_range1),
        gpu_options=env.gpu_options(),
        max_cpus=env.slurm_max_cpus,
    )

    storage = StorageConfig(
        allowed_roots=[env.storage_path] if env.storage_path else [],
    )

    return LauncherConfig(ssh=ssh_config, slurm=slurm_config, storage=storage)


def load_config(config_path: Path | None = None) -> LauncherConfig:
    """Load application configuration.

    Priority:
    1. Explicit config_path argument
    2. ./annolaunch.yaml or ./annolaunch.yml
    3. Environment variables / .env file

    Raises:
        FileNotFoundError: If explicit config_path doesn't exist, or no
            configuration is found at all.
        ValidationError: If config is invalid.
    """
    yaml_path = find_config_file(config_path)

    if yaml_path is not None:
        return load_yaml_config(yaml_path)

    try:
        return load_env_config()
    except ValidationError as e:
        raise FileNotFoundError(
            "No configuration found. Create annolaunch.yaml or set SSH_HOST and "
            "ANNOTAT3D_CONTAINER_PATH in the environment."
        ) from e
