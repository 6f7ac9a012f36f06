"""
Settings loading for workspool.

Configuration is assembled from multiple sources:
1. Environment variables (highest precedence), ``WORKSPOOL_`` prefixed,
   nested sections separated by ``__``
2. A YAML config file (explicit path, current directory or XDG config dir)
3. The selected environment preset
4. Model defaults (lowest precedence)
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from workspool.config.models import LoggingConfig, WorkspaceManagerConfig
from workspool.config.presets import (
    ENVIRONMENT_PRESETS,
    get_environment_config,
    merge_config,
)
from workspool.core.errors import ConfigError
from workspool.utils.xdg import get_xdg_config_dir


logger = logging.getLogger(__name__)

ENV_PREFIX = "WORKSPOOL_"


class WorkspoolSettings(BaseSettings):
    """Top level settings with automatic environment variable support.

    ``workspace`` holds partial overrides only; the full
    :class:`WorkspaceManagerConfig` is produced by
    :meth:`build_workspace_config` on top of the environment preset.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Environment variables override file data passed to the constructor."""
        return (
            env_settings,
            init_settings,
            dotenv_settings,
            file_secret_settings,
        )

    environment: str | None = Field(
        default=None,
        description="Preset to start from: development, ci, production or test",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    workspace: dict[str, Any] = Field(
        default_factory=dict,
        description="Partial workspace manager configuration",
    )

    def build_workspace_config(self) -> WorkspaceManagerConfig:
        """Resolve the effective workspace manager configuration.

        Raises:
            ConfigError: If the preset is unknown or values are invalid
        """
        if self.environment:
            return get_environment_config(self.environment, self.workspace)
        return merge_config(self.workspace)


def generate_config_paths(config_path: str | Path | None = None) -> list[Path]:
    """Generate a list of config paths to search in order of precedence."""
    config_paths: list[Path] = []

    if config_path:
        config_paths.append(Path(config_path).expanduser().resolve())

    config_paths.extend([Path.cwd() / "workspool.yaml", Path.cwd() / ".workspool.yml"])

    xdg_dir = get_xdg_config_dir()
    config_paths.extend([xdg_dir / "config.yaml", xdg_dir / "config.yml"])
    return config_paths


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML configuration file.

    Raises:
        ConfigError: If the file cannot be read or is not a YAML mapping
    """
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(
            f"Cannot read configuration file {path}: {e}", context={"path": str(path)}
        ) from e
    if not isinstance(data, dict):
        raise ConfigError(
            f"Configuration file {path} must contain a mapping",
            context={"path": str(path)},
        )
    return data


def load_settings(config_path: str | Path | None = None) -> WorkspoolSettings:
    """Load settings from the first config file found plus the environment.

    Args:
        config_path: Optional explicit config file, must exist when given

    Returns:
        Validated settings

    Raises:
        ConfigError: If a file is unreadable or settings are invalid
    """
    if config_path and not Path(config_path).expanduser().exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            context={"path": str(config_path)},
        )

    if logger.isEnabledFor(logging.DEBUG):
        env_vars = sorted(k for k in os.environ if k.startswith(ENV_PREFIX))
        logger.debug("workspool environment variables: %s", env_vars)

    file_data: dict[str, Any] = {}
    for candidate in generate_config_paths(config_path):
        if candidate.is_file():
            file_data = read_config_file(candidate)
            logger.debug("Loaded configuration from %s", candidate)
            break
    else:
        logger.debug("No configuration file found, using defaults")

    try:
        settings = WorkspoolSettings(**file_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e

    if settings.environment and settings.environment not in ENVIRONMENT_PRESETS:
        raise ConfigError(
            f"Unknown environment '{settings.environment}'",
            context={"environment": settings.environment},
        )
    return settings
