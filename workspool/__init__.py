"""Workspool - Git workspace pool manager."""

from importlib.metadata import distribution

from .config import WorkspaceManagerConfig
from .models.workspace import (
    OperationOutcome,
    WorkspaceHandle,
    WorkspaceRecord,
    WorkspaceRequest,
    WorkspaceState,
)


__version__ = distribution(__package__ or "workspool").version

__all__ = [
    "OperationOutcome",
    "WorkspaceHandle",
    "WorkspaceManagerConfig",
    "WorkspaceRecord",
    "WorkspaceRequest",
    "WorkspaceState",
    "__version__",
]

# Import the manager after setting __version__ to avoid circular imports
from .workspace import WorkspaceManager, create_workspace_manager


__all__ += ["WorkspaceManager", "create_workspace_manager"]
