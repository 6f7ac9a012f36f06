"""Adapters implementing workspool protocols."""

from .git_adapter import GitCliProvider, GitCommandError, create_git_provider


__all__ = ["GitCliProvider", "GitCommandError", "create_git_provider"]
