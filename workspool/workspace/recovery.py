"""Operation lock markers, interrupted-checkout detection and recovery.

A mutating operation (clone, fetch) runs with a marker file next to the
workspace directory. The marker is removed only when the operation succeeds,
so a marker found later means the operation crashed or failed and the
directory cannot be trusted. Recovery never repairs: it deletes the whole
directory and lets the caller clone again.
"""

import json
import logging
import os
import socket
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import psutil
from pydantic import ValidationError

from workspool.core.errors import CorruptedWorkspaceError, InterruptedOperationError
from workspool.models.workspace import OperationLockInfo, utc_now
from workspool.protocols.git_provider_protocol import GitProviderProtocol
from workspool.utils.file_utils import remove_directory


logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_SUFFIX = ".op-lock"
REQUIRED_GIT_ENTRIES = ("HEAD", "objects", "refs", "config")


def operation_lock_path(path: Path) -> Path:
    """Marker file colocated with the workspace directory."""
    return path.with_name(path.name + LOCK_SUFFIX)


def has_operation_lock(path: Path) -> bool:
    return operation_lock_path(path).exists()


def acquire_operation_lock(path: Path, operation: str) -> OperationLockInfo:
    """Write the operation lock marker for ``path``.

    Args:
        path: Workspace directory
        operation: Name of the mutating operation

    Returns:
        The lock information written
    """
    info = OperationLockInfo(
        operation=operation,
        started_at=utc_now(),
        pid=os.getpid(),
        hostname=socket.gethostname(),
    )
    lock_path = operation_lock_path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = lock_path.with_name(f"{lock_path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(json.dumps(info.to_dict_full()))
    os.replace(tmp_path, lock_path)
    logger.debug("Acquired operation lock for %s (%s)", path, operation)
    return info


def release_operation_lock(path: Path) -> None:
    operation_lock_path(path).unlink(missing_ok=True)


def read_operation_lock(path: Path) -> OperationLockInfo | None:
    """Read the marker, None if absent or unreadable."""
    lock_path = operation_lock_path(path)
    try:
        return OperationLockInfo.model_validate_json(lock_path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as e:
        logger.debug("Unreadable operation lock %s: %s", lock_path, e)
        return None


def describe_lock_holder(path: Path) -> str:
    """Human readable description of the marker owner for diagnostics."""
    info = read_operation_lock(path)
    if info is None:
        return "unknown operation"
    alive = ""
    if info.hostname in ("", socket.gethostname()):
        alive = " (running)" if psutil.pid_exists(info.pid) else " (process gone)"
    return (
        f"{info.operation} started {info.started_at.isoformat()} "
        f"by pid {info.pid}{alive}"
    )


def is_incomplete(path: Path) -> bool:
    """Check whether ``path`` holds an interrupted or broken checkout.

    A directory that does not exist is not incomplete.
    """
    if not path.exists():
        return False
    if has_operation_lock(path):
        return True
    git_dir = path / ".git"
    if not git_dir.is_dir():
        return True
    return any(not (git_dir / entry).exists() for entry in REQUIRED_GIT_ENTRIES)


def discard_workspace(path: Path) -> bool:
    """Delete the workspace directory and its marker unconditionally."""
    removed = remove_directory(path)
    release_operation_lock(path)
    return removed


def recover_from_interruption(path: Path) -> bool:
    """Delete ``path`` if it holds an incomplete checkout.

    Returns:
        True if the directory was removed
    """
    if not is_incomplete(path):
        if has_operation_lock(path):
            # Marker without a directory: the operation died before creating it
            release_operation_lock(path)
        return False

    logger.warning(
        "Recovering interrupted workspace %s: %s", path, describe_lock_holder(path)
    )
    discard_workspace(path)
    return True


def with_operation_lock(path: Path, operation: str, fn: Callable[[], T]) -> T:
    """Run ``fn`` while holding the operation lock marker for ``path``.

    Any incomplete checkout is recovered first. On success the marker is
    removed; on failure it is left in place for the next caller to detect.

    Raises:
        InterruptedOperationError: Wrapping whatever ``fn`` raised
    """
    recover_from_interruption(path)
    acquire_operation_lock(path, operation)
    try:
        result = fn()
    except Exception as e:
        logger.debug("Operation %s on %s failed, leaving lock", operation, path)
        raise InterruptedOperationError(operation, str(path), e) from e
    release_operation_lock(path)
    return result


def validate_integrity(
    path: Path, git_provider: GitProviderProtocol | None = None
) -> None:
    """Post-operation check of a workspace.

    Raises:
        CorruptedWorkspaceError: If a marker is still present, the checkout is
            structurally invalid or git cannot query its status
    """
    if has_operation_lock(path):
        raise CorruptedWorkspaceError(str(path), "operation lock still present")
    if not path.is_dir():
        raise CorruptedWorkspaceError(str(path), "directory is missing")
    if is_incomplete(path):
        raise CorruptedWorkspaceError(str(path), "git metadata is incomplete")
    if git_provider is None:
        return
    try:
        git_provider.status_is_clean(path)
    except Exception as e:
        raise CorruptedWorkspaceError(str(path), f"git status failed: {e}", e) from e
