"""Configuration management for Stackr."""

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..constants import (
    DEFAULT_BACKUP_DIR,
    DEFAULT_CRON_LOGS_DIR,
    DEFAULT_ENV_FILE,
    DEFAULT_GLOBAL_CONFIG,
    DEFAULT_REMOTE_STACKS_DIR,
    DEFAULT_STACKS_DIR,
    ENV_CONFIG_FILE,
    ENV_ENV_FILE,
    ENV_HOST,
    ENV_PORT,
    ENV_REPO_ROOT,
    ENV_STACKS_DIR,
)
from ..utils import absolute_path
from .exceptions import ConfigurationError

logger = structlog.get_logger()


class CronConfig(BaseModel):
    """Cron job execution settings."""

    profile: str = "cron"
    enable_file_logs: bool = True
    logs_dir: str = DEFAULT_CRON_LOGS_DIR
    docker_container_retention: int = Field(default=5, ge=0)


class HTTPConfig(BaseModel):
    """Routing settings used for provisioned domain names."""

    base_domain: str = "localhost"


class PathsConfig(BaseModel):
    """Filesystem locations for backups and storage pools."""

    backup_dir: str = DEFAULT_BACKUP_DIR
    pools: dict[str, str] = Field(default_factory=dict)
    custom: dict[str, str] = Field(default_factory=dict)


class EnvConfig(BaseModel):
    """Extra environment injected into every stack or into one stack."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    global_env: dict[str, str] = Field(default_factory=dict, alias="global")
    stacks: dict[str, dict[str, str]] = Field(default_factory=dict)


class RetryConfig(BaseModel):
    """Backoff policies for git clones and deploy-time image pulls."""

    clone_attempts: int = Field(default=3, ge=1)
    clone_initial_delay: float = 2.0
    clone_max_delay: float = 10.0
    image_pull_attempts: int = Field(default=5, ge=1)
    image_pull_initial_delay: float = 30.0
    image_pull_max_delay: float = 300.0


class RemovalConfig(BaseModel):
    """Behaviour of the removed-stack handler."""

    continue_on_archive_error: bool = True


class GlobalConfig(BaseModel):
    """Content of the .stackr.yaml file."""

    model_config = ConfigDict(extra="ignore")

    stacks_dir: str = DEFAULT_STACKS_DIR
    remote_stacks_dir: str = DEFAULT_REMOTE_STACKS_DIR
    cron: CronConfig = Field(default_factory=CronConfig)
    http: HTTPConfig = Field(default_factory=HTTPConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    env: EnvConfig = Field(default_factory=EnvConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    removal: RemovalConfig = Field(default_factory=RemovalConfig)


class StackrConfig(BaseSettings):
    """Main configuration for Stackr."""

    repo_root: Path = Field(default_factory=Path.cwd)
    env_file: str = Field(default=DEFAULT_ENV_FILE, alias=ENV_ENV_FILE)
    host: str = Field(default="0.0.0.0", alias=ENV_HOST)  # nosec B104
    port: int = Field(default=9000, alias=ENV_PORT)
    stacks_dir: str | None = Field(default=None, alias=ENV_STACKS_DIR)
    config_file: str = Field(default=DEFAULT_GLOBAL_CONFIG, alias=ENV_CONFIG_FILE)
    settings: GlobalConfig = Field(default_factory=GlobalConfig)

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    @property
    def env_path(self) -> Path:
        return absolute_path(self.repo_root, self.env_file)

    @property
    def stacks_path(self) -> Path:
        return absolute_path(self.repo_root, self.stacks_dir or self.settings.stacks_dir)

    @property
    def remote_stacks_path(self) -> Path:
        return absolute_path(self.repo_root, self.settings.remote_stacks_dir)

    @property
    def backup_path(self) -> Path:
        return absolute_path(self.repo_root, self.settings.paths.backup_dir)

    @property
    def cron_logs_path(self) -> Path:
        return absolute_path(self.repo_root, self.settings.cron.logs_dir)

    @property
    def pool_bases(self) -> dict[str, Path]:
        """Storage pools keyed by upper-cased name."""
        pools = {}
        for name, base in self.settings.paths.pools.items():
            key = name.strip().upper()
            if not key:
                raise ConfigurationError("paths.pools contains empty key")
            pools[key] = absolute_path(self.repo_root, base)
        return pools


def resolve_repo_root(override: str | None = None) -> Path:
    """Resolve the repository root from an override, STACKR_REPO_ROOT or the cwd.

    Raises:
        ConfigurationError: If the resolved path is not an existing directory
    """
    raw = (override if override is not None else os.getenv(ENV_REPO_ROOT, "")).strip()
    if not raw:
        return Path.cwd()

    root = Path(raw).expanduser().resolve()
    if not root.exists():
        raise ConfigurationError(f"{ENV_REPO_ROOT}: {root} does not exist")
    if not root.is_dir():
        raise ConfigurationError(f"{ENV_REPO_ROOT} must point to a directory")
    return root


def load_config(repo_root: Path | str | None = None) -> StackrConfig:
    """Load configuration from .stackr.yaml and STACKR_* environment variables.

    Args:
        repo_root: Repository root; resolved from the environment when omitted

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If the config file is invalid or the stacks dir is missing
    """
    root = resolve_repo_root(str(repo_root) if repo_root is not None else None)
    config = StackrConfig(repo_root=root)

    config_path = absolute_path(root, config.config_file)
    config.settings = _load_global_config(config_path)

    stacks_path = config.stacks_path
    if not stacks_path.exists():
        raise ConfigurationError(f"stacks dir {stacks_path} does not exist")
    if not stacks_path.is_dir():
        raise ConfigurationError(f"{stacks_path} is not a directory")

    logger.debug(
        "Configuration loaded",
        repo_root=str(root),
        config_file=str(config_path),
        stacks_dir=str(stacks_path),
        env_file=str(config.env_path),
    )
    return config


def _load_global_config(config_path: Path) -> GlobalConfig:
    """Load the global YAML config; a missing file yields defaults."""
    if not config_path.exists():
        return GlobalConfig()

    yaml_config = _load_yaml_config(config_path)
    try:
        return GlobalConfig(**yaml_config)
    except ValidationError as e:
        raise ConfigurationError(f"failed to parse stackr config {config_path}: {e}") from e


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"failed to read stackr config {config_path}: {e}") from e

    # Ensure we always return a dict (yaml.safe_load can return None, str, list, etc.)
    if not isinstance(loaded, dict):
        return {}
    return loaded
