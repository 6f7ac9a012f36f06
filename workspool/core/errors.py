"""Error hierarchy for workspool.

Every error carries a ``context`` dict (path, key, operation...) that is safe
to log, a ``recoverable`` flag used by the retry layer, a ``suggestion`` shown
to operators and a ``category`` used to group errors in logs.
"""

from typing import Any


class WorkspoolError(Exception):
    """Base exception for all workspool errors."""

    recoverable: bool = False
    suggestion: str = ""
    category: str = "workspace"

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Return a log friendly representation of the error."""
        data: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category,
            "recoverable": self.recoverable,
            "context": dict(self.context),
        }
        if self.suggestion:
            data["suggestion"] = self.suggestion
        if self.cause is not None:
            data["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return data


class ConfigError(WorkspoolError):
    """Invalid or unreadable configuration."""

    category = "config"
    suggestion = "Check the workspool configuration file and WORKSPOOL_* variables"


class InsufficientSpaceError(WorkspoolError):
    """Not enough free disk space for a workspace operation."""

    category = "filesystem"

    def __init__(self, required: int, available: int, path: str):
        # Local import keeps errors importable from every layer
        from workspool.utils.file_utils import format_bytes

        super().__init__(
            f"Insufficient disk space at {path}: required {format_bytes(required)}, "
            f"available {format_bytes(available)}",
            context={"path": path, "required": required, "available": available},
        )
        self.required = required
        self.available = available
        self.path = path
        self.suggestion = (
            f"Free up at least {format_bytes(max(required - available, 0))} "
            "or lower error_handling.required_disk_space_bytes"
        )


class PermissionDeniedError(WorkspoolError):
    """A directory is not writable by the current process."""

    category = "filesystem"

    def __init__(self, path: str, operation: str, cause: BaseException | None = None):
        super().__init__(
            f"Permission denied: cannot {operation} {path}",
            context={"path": path, "operation": operation},
            cause=cause,
        )
        self.path = path
        self.operation = operation
        self.suggestion = f"Check ownership and permissions of {path}"


class UnsafePathError(WorkspoolError):
    """A path is outside the managed base directory."""

    category = "filesystem"
    suggestion = "Only paths below the workspace base directory can be removed"

    def __init__(self, message: str, *, path: str, base_directory: str):
        super().__init__(
            message, context={"path": path, "base_directory": base_directory}
        )
        self.path = path
        self.base_directory = base_directory


class CannotCleanupBaseDirectoryError(UnsafePathError):
    """Refusal to delete the base directory itself."""

    suggestion = "Use cleanup_all_workspaces() to remove every managed workspace"


class WorkspaceBusyError(WorkspoolError):
    """Another holder owns the reservation for this workspace key."""

    recoverable = True
    suggestion = "Retry later or raise cache.lock_wait_seconds to wait for the holder"

    def __init__(self, key: str, holder: str | None = None):
        message = f"Workspace {key} is in use"
        if holder:
            message += f" ({holder})"
        super().__init__(message, context={"key": key, "holder": holder})
        self.key = key
        self.holder = holder


class CorruptedWorkspaceError(WorkspoolError):
    """A checkout failed structural or git-level validation."""

    recoverable = True
    suggestion = "The workspace will be removed and cloned again"

    def __init__(self, path: str, reason: str, cause: BaseException | None = None):
        super().__init__(
            f"Workspace at {path} is corrupted: {reason}",
            context={"path": path, "reason": reason},
            cause=cause,
        )
        self.path = path
        self.reason = reason


class InterruptedOperationError(WorkspoolError):
    """An operation running under an operation lock failed.

    The lock marker is left in place so the next access detects the
    workspace as incomplete and recovers it.
    """

    def __init__(self, operation: str, path: str, cause: BaseException):
        super().__init__(
            f"Operation '{operation}' on {path} was interrupted: {cause}",
            context={"path": path, "operation": operation},
            cause=cause,
        )
        self.operation = operation
        self.path = path
        self.recoverable = is_recoverable(cause)
        self.category = get_error_category(cause)
        self.suggestion = getattr(cause, "suggestion", "") or (
            "The workspace will be recovered on next access"
        )


class CloneError(WorkspoolError):
    """``git clone`` failed."""

    category = "git"
    suggestion = "Check the repository URL, branch and credentials"

    def __init__(
        self,
        repository_url: str,
        message: str,
        *,
        recoverable: bool = True,
        cause: BaseException | None = None,
    ):
        super().__init__(
            f"Failed to clone {repository_url}: {message}",
            context={"repository_url": repository_url},
            cause=cause,
        )
        self.repository_url = repository_url
        self.recoverable = recoverable


class UpdateError(WorkspoolError):
    """Fetching or resetting an existing checkout failed."""

    category = "git"
    suggestion = "The workspace will be re-cloned"

    def __init__(
        self,
        path: str,
        message: str,
        *,
        recoverable: bool = True,
        cause: BaseException | None = None,
    ):
        super().__init__(
            f"Failed to update workspace {path}: {message}",
            context={"path": path},
            cause=cause,
        )
        self.path = path
        self.recoverable = recoverable


class NetworkError(WorkspoolError):
    """Transient network failure talking to the remote."""

    recoverable = True
    category = "network"
    suggestion = "Check network connectivity; the operation is retried automatically"


class FailingTestsError(WorkspoolError):
    """Raised by callers to report that the work inside a workspace failed tests.

    The manager classifies it as a ``test-failure`` outcome for preservation.
    """

    category = "operation"


def is_recoverable(error: BaseException) -> bool:
    """Return True if ``error`` is worth retrying."""
    return bool(getattr(error, "recoverable", False))


def get_error_category(error: BaseException) -> str:
    """Return the category of ``error``, ``unknown`` for foreign exceptions."""
    return str(getattr(error, "category", "unknown"))
