"""Configuration for workspool."""

from .models import (
    CacheSettings,
    CleanupSettings,
    CleanupTiming,
    ErrorHandlingSettings,
    LoggingConfig,
    PreservationSettings,
    WorkspaceManagerConfig,
)
from .presets import (
    ENVIRONMENT_PRESETS,
    deep_merge,
    get_environment_config,
    merge_config,
)
from .settings import WorkspoolSettings, load_settings


__all__ = [
    "CacheSettings",
    "CleanupSettings",
    "CleanupTiming",
    "ENVIRONMENT_PRESETS",
    "ErrorHandlingSettings",
    "LoggingConfig",
    "PreservationSettings",
    "WorkspaceManagerConfig",
    "WorkspoolSettings",
    "deep_merge",
    "get_environment_config",
    "load_settings",
    "merge_config",
]
