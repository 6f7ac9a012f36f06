"""Utilities for file system operations."""

import logging
import os
import shutil
import stat
from pathlib import Path


logger = logging.getLogger(__name__)


def format_bytes(bytes_count: int | float) -> str:
    """Format byte count to human-readable string.

    Args:
        bytes_count: Size in bytes

    Returns:
        Human-readable size string with two decimals

    Examples:
        >>> format_bytes(1536)
        '1.50 KB'
    """
    size = float(bytes_count)
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} TB"


def directory_size(path: Path) -> int:
    """Get total size of directory in bytes.

    Symlinks are not followed. Files that disappear while walking are
    ignored so the result is a best-effort measurement.

    Args:
        path: Directory to measure

    Returns:
        Sum of regular file sizes below ``path``, 0 if it does not exist
    """
    total = 0
    if not path.exists():
        return 0
    for root, _dirs, files in os.walk(path, followlinks=False):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def _make_tree_writable(path: Path) -> None:
    # git marks pack files read-only
    for root, dirs, files in os.walk(path, followlinks=False):
        for name in dirs + files:
            try:
                os.chmod(os.path.join(root, name), stat.S_IRWXU, follow_symlinks=False)
            except (OSError, NotImplementedError):
                continue


def remove_directory(path: Path) -> bool:
    """Remove a directory tree.

    Args:
        path: Directory to remove

    Returns:
        True if something was removed, False if the path did not exist
    """
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if not path.exists():
        return False
    try:
        shutil.rmtree(path)
    except PermissionError:
        _make_tree_writable(path)
        shutil.rmtree(path)
    logger.debug("Removed directory %s", path)
    return True
