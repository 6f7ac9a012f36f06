"""Pydantic models used across workspool."""

from .base import WorkspoolBaseModel
from .workspace import (
    CleanupReport,
    ManualPreservation,
    OperationLockInfo,
    OperationOutcome,
    PreservationEntry,
    PreservationTrigger,
    WorkspaceHandle,
    WorkspaceRecord,
    WorkspaceRequest,
    WorkspaceState,
    WorkspaceStrategy,
    utc_now,
)


__all__ = [
    "CleanupReport",
    "ManualPreservation",
    "OperationLockInfo",
    "OperationOutcome",
    "PreservationEntry",
    "PreservationTrigger",
    "WorkspaceHandle",
    "WorkspaceRecord",
    "WorkspaceRequest",
    "WorkspaceState",
    "WorkspaceStrategy",
    "WorkspoolBaseModel",
    "utc_now",
]
