"""Workspace domain models: index records, preservation entries and outcomes."""

import subprocess
import threading
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field

from workspool.core.errors import FailingTestsError, InterruptedOperationError
from workspool.models.base import WorkspoolBaseModel


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class WorkspaceState(str, Enum):
    """Lifecycle state of a cached workspace."""

    ACTIVE = "active"
    IDLE = "idle"
    LOCKED = "locked"
    PRESERVED = "preserved"
    CORRUPTED = "corrupted"


class PreservationTrigger(str, Enum):
    """What caused a workspace to be preserved."""

    FAILURE = "failure"
    TIMEOUT = "timeout"
    TEST_FAILURE = "test-failure"
    MANUAL = "manual"


WorkspaceStrategy = Literal["persistent", "temporary"]


class PreservationEntry(WorkspoolBaseModel):
    """Why and until when a workspace is kept for post-mortem inspection."""

    trigger: Annotated[
        PreservationTrigger, Field(description="What caused the preservation")
    ]
    preserved_at: Annotated[datetime, Field(description="When preservation started")]
    retention_expires_at: Annotated[
        datetime | None,
        Field(default=None, description="Expiry time, None keeps it indefinitely"),
    ]
    reason: Annotated[str, Field(default="", description="Human readable reason")]
    metadata: Annotated[
        dict[str, Any],
        Field(default_factory=dict, description="Diagnostics captured at failure"),
    ]

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.retention_expires_at is None:
            return False
        return self.retention_expires_at <= (now or utc_now())


class WorkspaceRecord(WorkspoolBaseModel):
    """Persisted description of one cached workspace."""

    key: Annotated[str, Field(description="Stable identity from URL and branch")]
    repository_url: Annotated[
        str, Field(description="Repository URL with credentials stripped")
    ]
    branch: Annotated[
        str | None, Field(default=None, description="Branch, None for remote default")
    ]
    path: Annotated[Path, Field(description="Absolute workspace directory")]
    size_bytes: Annotated[int, Field(default=0, ge=0, description="Last measured size")]
    size_measured_at: Annotated[
        datetime | None, Field(default=None, description="When size was measured")
    ]
    created_at: Annotated[datetime, Field(default_factory=utc_now)]
    last_accessed_at: Annotated[datetime, Field(default_factory=utc_now)]
    state: Annotated[WorkspaceState, Field(default=WorkspaceState.ACTIVE)]
    owner_pid: Annotated[
        int | None, Field(default=None, description="Process holding the reservation")
    ]
    commit_hash: Annotated[str | None, Field(default=None)]
    removal_requested: Annotated[
        bool, Field(default=False, description="Delete on the next cleanup pass")
    ]
    preservation: Annotated[
        PreservationEntry | None,
        Field(default=None, description="Set while the workspace is preserved"),
    ]

    def to_cache_value(self) -> dict[str, Any]:
        """Convert to a value suitable for the index store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_cache_value(cls, data: dict[str, Any]) -> "WorkspaceRecord":
        """Create a record from an index store value."""
        return cls.model_validate(data)


class OperationLockInfo(WorkspoolBaseModel):
    """Content of an operation lock marker file."""

    operation: str
    started_at: datetime
    pid: int
    hostname: str = ""


class ManualPreservation(WorkspoolBaseModel):
    """Explicit caller request to keep a workspace after use."""

    enabled: bool = True
    reason: str = "manual"
    retention_days: float | None = None


class WorkspaceRequest(WorkspoolBaseModel):
    """What a caller needs a workspace for."""

    repository_url: Annotated[str, Field(min_length=1)]
    branch: str | None = None
    estimated_size_bytes: Annotated[
        int | None,
        Field(default=None, ge=0, description="Size hint used to pick a strategy"),
    ]
    preserve: ManualPreservation | None = None
    operation: str = "agent-run"


class OperationOutcome(WorkspoolBaseModel):
    """Result of the caller's work inside a workspace."""

    success: bool
    trigger: PreservationTrigger | None = None
    error_type: str | None = None
    error_message: str | None = None
    traceback: str | None = None
    operation: str | None = None

    @classmethod
    def succeeded(cls, operation: str | None = None) -> "OperationOutcome":
        return cls(success=True, operation=operation)

    @classmethod
    def from_exception(
        cls, exc: BaseException, operation: str | None = None
    ) -> "OperationOutcome":
        """Classify an exception into a failure outcome.

        Timeouts (builtin ``TimeoutError`` or ``subprocess.TimeoutExpired``)
        map to ``timeout``, ``FailingTestsError`` maps to ``test-failure`` and
        everything else to ``failure``. Wrapped causes are inspected too.
        """
        return cls(
            success=False,
            trigger=classify_failure(exc),
            error_type=type(exc).__name__,
            error_message=str(exc),
            traceback="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
            operation=operation,
        )


def classify_failure(exc: BaseException) -> PreservationTrigger:
    current: BaseException | None = exc
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, TimeoutError | subprocess.TimeoutExpired):
            return PreservationTrigger.TIMEOUT
        if isinstance(current, FailingTestsError):
            return PreservationTrigger.TEST_FAILURE
        if isinstance(current, InterruptedOperationError):
            current = current.cause
        else:
            current = current.__cause__
    return PreservationTrigger.FAILURE


class CleanupReport(WorkspoolBaseModel):
    """Summary of one cleanup pass."""

    expired: int = 0
    evicted: int = 0
    preserved_cap_removed: int = 0
    recovered: int = 0
    removed: int = 0
    skipped_busy: int = 0
    failed: int = 0
    freed_bytes: int = 0

    @property
    def total_removed(self) -> int:
        return self.evicted + self.preserved_cap_removed + self.recovered + self.removed


@dataclass
class WorkspaceHandle:
    """A provisioned workspace handed to the caller.

    ``release`` returns the reservation to the pool (once), ``cleanup`` asks
    the manager to apply its cleanup timing. Temporary workspaces are
    deleted by ``cleanup``.
    """

    path: Path
    is_new: bool
    strategy: WorkspaceStrategy
    key: str
    commit_hash: str | None = None
    _release: Callable[[OperationOutcome], None] | None = field(
        default=None, repr=False
    )
    _cleanup: Callable[[], None] | None = field(default=None, repr=False)
    _released: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    def release(self, outcome: OperationOutcome | None = None) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        if self._release is not None:
            self._release(outcome or OperationOutcome.succeeded())

    def cleanup(self) -> None:
        self.release()
        if self._cleanup is not None:
            self._cleanup()
