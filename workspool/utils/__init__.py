"""Utility helpers shared across workspool."""

from .file_utils import directory_size, format_bytes, remove_directory
from .repo_url import (
    RepoInfo,
    extract_repo_info,
    is_git_url,
    normalize_repo_url,
    redact_url,
    workspace_key,
)


__all__ = [
    "RepoInfo",
    "directory_size",
    "extract_repo_info",
    "format_bytes",
    "is_git_url",
    "normalize_repo_url",
    "redact_url",
    "remove_directory",
    "workspace_key",
]
