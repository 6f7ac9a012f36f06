"""Environment presets and configuration merging."""

import copy
import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import ValidationError

from workspool.config.models.workspace import GiB, WorkspaceManagerConfig
from workspool.core.errors import ConfigError


logger = logging.getLogger(__name__)

Environment = Literal["development", "ci", "production", "test"]

# Partial overrides applied on top of the model defaults
ENVIRONMENT_PRESETS: dict[str, dict[str, Any]] = {
    "development": {
        "cleanup": {"timing": "deferred", "background_interval_ms": 5 * 60 * 1000},
        "preservation": {
            "preserve_on_failure": True,
            "preserve_on_timeout": True,
            "preserve_on_test_failure": True,
            "failure_retention_days": 7,
            "max_preserved_workspaces": 5,
            "log_preservation_events": True,
            "store_detailed_metadata": True,
        },
        "error_handling": {
            "enable_pre_flight_checks": True,
            "enable_corruption_detection": True,
        },
    },
    "ci": {
        "cleanup": {"timing": "deferred", "background_interval_ms": 5 * 60 * 1000},
        "preservation": {
            "preserve_on_failure": True,
            "preserve_on_timeout": True,
            # Too noisy on CI runners
            "preserve_on_test_failure": False,
            "failure_retention_days": 1,
            "max_preserved_workspaces": 3,
            "max_preserved_total_bytes": 2 * GiB,
            "log_preservation_events": False,
        },
        "error_handling": {"enable_pre_flight_checks": True, "max_retries": 2},
    },
    "production": {
        "cleanup": {"timing": "background", "background_interval_ms": 10 * 60 * 1000},
        "preservation": {
            "preserve_on_failure": False,
            "preserve_on_timeout": False,
            "preserve_on_test_failure": False,
            "max_preserved_workspaces": 0,
            "log_preservation_events": False,
            "store_detailed_metadata": False,
        },
        "error_handling": {"enable_pre_flight_checks": True, "max_retries": 3},
    },
    "test": {
        "cleanup": {"timing": "immediate", "background_interval_ms": 60 * 1000},
        "preservation": {
            "preserve_on_failure": False,
            "preserve_on_timeout": False,
            "preserve_on_test_failure": False,
            "max_preserved_workspaces": 0,
            "log_preservation_events": False,
        },
        "error_handling": {"enable_pre_flight_checks": False, "max_retries": 1},
    },
}


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``overrides`` into a copy of ``base``.

    Nested mappings are merged key by key, any other value replaces the
    base value. Neither argument is modified.
    """
    result = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def merge_config(
    overrides: Mapping[str, Any] | None,
    base: WorkspaceManagerConfig | None = None,
) -> WorkspaceManagerConfig:
    """Merge partial overrides into a configuration.

    Args:
        overrides: Partial configuration, nested by section
        base: Configuration to start from, defaults to the model defaults

    Returns:
        A new validated configuration

    Raises:
        ConfigError: If the merged configuration is invalid
    """
    base_data = (base or WorkspaceManagerConfig()).model_dump(mode="python")
    merged = deep_merge(base_data, overrides or {})
    try:
        return WorkspaceManagerConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid workspace configuration: {e}", context={"errors": e.errors()}
        ) from e


def get_environment_config(
    environment: str, overrides: Mapping[str, Any] | None = None
) -> WorkspaceManagerConfig:
    """Build the configuration for a named environment preset.

    Args:
        environment: One of ``development``, ``ci``, ``production``, ``test``
        overrides: Optional partial configuration applied after the preset

    Raises:
        ConfigError: If the environment is unknown or the result is invalid
    """
    preset = ENVIRONMENT_PRESETS.get(environment)
    if preset is None:
        raise ConfigError(
            f"Unknown environment '{environment}', expected one of "
            f"{sorted(ENVIRONMENT_PRESETS)}",
            context={"environment": environment},
        )
    logger.debug("Applying %s configuration preset", environment)
    return merge_config(deep_merge(preset, overrides or {}))
