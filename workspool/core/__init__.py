from .errors import (
    CannotCleanupBaseDirectoryError,
    CloneError,
    ConfigError,
    CorruptedWorkspaceError,
    FailingTestsError,
    InsufficientSpaceError,
    InterruptedOperationError,
    NetworkError,
    PermissionDeniedError,
    UnsafePathError,
    UpdateError,
    WorkspaceBusyError,
    WorkspoolError,
)
from .logging import get_logger, setup_logging, setup_logging_from_config


__all__ = [
    "setup_logging",
    "setup_logging_from_config",
    "get_logger",
    "WorkspoolError",
    "ConfigError",
    "InsufficientSpaceError",
    "PermissionDeniedError",
    "UnsafePathError",
    "CannotCleanupBaseDirectoryError",
    "WorkspaceBusyError",
    "CorruptedWorkspaceError",
    "InterruptedOperationError",
    "CloneError",
    "UpdateError",
    "NetworkError",
    "FailingTestsError",
]
