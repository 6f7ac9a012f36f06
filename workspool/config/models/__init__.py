"""Configuration models for workspool."""

from .logging import LoggingConfig
from .workspace import (
    CacheSettings,
    CleanupSettings,
    CleanupTiming,
    ErrorHandlingSettings,
    OversizedWorkspacePolicy,
    PreservationSettings,
    PreservedEvictionStrategy,
    WorkspaceManagerConfig,
)


__all__ = [
    "CacheSettings",
    "CleanupSettings",
    "CleanupTiming",
    "ErrorHandlingSettings",
    "LoggingConfig",
    "OversizedWorkspacePolicy",
    "PreservationSettings",
    "PreservedEvictionStrategy",
    "WorkspaceManagerConfig",
]
