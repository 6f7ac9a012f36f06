"""Pre-flight filesystem checks and path safety for destructive operations."""

import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from workspool.core.errors import (
    CannotCleanupBaseDirectoryError,
    InsufficientSpaceError,
    PermissionDeniedError,
    UnsafePathError,
)
from workspool.utils.file_utils import format_bytes


logger = logging.getLogger(__name__)

MIN_FREE_SPACE = 500 * 1024 * 1024


@dataclass
class FilesystemInfo:
    """Disk usage of the filesystem holding a path."""

    path: Path
    total_bytes: int
    used_bytes: int
    available_bytes: int

    @property
    def usage_percent(self) -> float:
        if not self.total_bytes:
            return 0.0
        return self.used_bytes / self.total_bytes * 100


def _nearest_existing_ancestor(path: Path) -> Path:
    current = path.expanduser().absolute()
    while not current.exists():
        if current.parent == current:
            break
        current = current.parent
    return current


def get_filesystem_info(path: Path) -> FilesystemInfo:
    """Get disk usage for the filesystem containing ``path``.

    Missing paths are resolved to their nearest existing ancestor.
    """
    anchor = _nearest_existing_ancestor(Path(path))
    usage = shutil.disk_usage(anchor)
    return FilesystemInfo(
        path=anchor,
        total_bytes=usage.total,
        used_bytes=usage.used,
        available_bytes=usage.free,
    )


def ensure_sufficient_space(path: Path, required_bytes: int = MIN_FREE_SPACE) -> int:
    """Check that the filesystem holding ``path`` has enough free space.

    Args:
        path: Target path, need not exist yet
        required_bytes: Minimum number of free bytes

    Returns:
        Available bytes

    Raises:
        InsufficientSpaceError: If less than ``required_bytes`` is available
    """
    info = get_filesystem_info(Path(path))
    if info.available_bytes < required_bytes:
        raise InsufficientSpaceError(
            required=required_bytes,
            available=info.available_bytes,
            path=str(path),
        )
    logger.debug(
        "Disk space OK at %s: %s available",
        info.path,
        format_bytes(info.available_bytes),
    )
    return info.available_bytes


def ensure_writable_directory(path: Path) -> Path:
    """Create ``path`` if needed and verify the process can write into it.

    Raises:
        PermissionDeniedError: If the directory cannot be created or written
    """
    path = Path(path).expanduser()
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PermissionDeniedError(str(path), "create directory", cause=e) from e

    if not os.access(path, os.W_OK | os.X_OK):
        raise PermissionDeniedError(str(path), "write to")

    test_file = path / f".permission_test_{uuid.uuid4().hex[:8]}"
    try:
        test_file.touch()
        test_file.unlink()
    except OSError as e:
        raise PermissionDeniedError(str(path), "write to", cause=e) from e
    return path


def _normalize(path: Path | str) -> Path:
    # Accept Windows style separators from callers
    text = str(path).replace("\\", "/")
    return Path(os.path.normpath(Path(text).expanduser().absolute())).resolve()


def validate_managed_path(
    path: Path | str, base_directory: Path | str, force: bool = False
) -> Path:
    """Ensure ``path`` may be deleted as part of managing ``base_directory``.

    Both paths are normalised (separators, ``..`` segments and symlinks)
    before comparison.

    Args:
        path: Path targeted by a destructive operation
        base_directory: Managed base directory
        force: Skip the descendant check for trusted callers

    Returns:
        The normalised path

    Raises:
        CannotCleanupBaseDirectoryError: If ``path`` is the base directory,
            regardless of ``force``
        UnsafePathError: If ``path`` is not below the base directory
    """
    target = _normalize(path)
    base = _normalize(base_directory)

    if target == base:
        raise CannotCleanupBaseDirectoryError(
            f"Cannot cleanup base directory {base}",
            path=str(target),
            base_directory=str(base),
        )
    if force:
        if base not in target.parents:
            logger.warning("Forced operation on unmanaged path %s", target)
        return target
    if base not in target.parents:
        raise UnsafePathError(
            f"Path {target} is outside the managed directory {base}",
            path=str(target),
            base_directory=str(base),
        )
    return target


def run_pre_flight_checks(
    base_directory: Path, required_bytes: int = MIN_FREE_SPACE
) -> None:
    """Verify the base directory is writable and has enough free space.

    Raises:
        PermissionDeniedError: If the directory is not writable
        InsufficientSpaceError: If free space is below ``required_bytes``
    """
    ensure_writable_directory(base_directory)
    ensure_sufficient_space(base_directory, required_bytes)
