"""Workspace manager configuration models."""

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from workspool.utils.xdg import get_xdg_cache_dir


MiB = 1024 * 1024
GiB = 1024 * MiB

CleanupTiming = Literal["immediate", "deferred", "background"]
OversizedWorkspacePolicy = Literal["reject", "warn", "allow"]
PreservedEvictionStrategy = Literal["oldest-first", "largest-first"]


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class CacheSettings(_Section):
    """Cache sizing and locking."""

    # Requests estimated below this size get a throwaway clone, 0 disables that
    size_threshold_bytes: int = Field(
        default=100 * MiB,
        ge=0,
        description="Repositories estimated smaller than this use a temporary clone",
    )
    max_workspaces: int = Field(
        default=10, ge=1, description="Maximum number of non-preserved workspaces"
    )
    max_total_bytes: int | None = Field(
        default=None, gt=0, description="Size budget for non-preserved workspaces"
    )
    lock_wait_seconds: float = Field(
        default=0.0,
        ge=0,
        description=(
            "How long to wait for a busy key, 0 fails immediately. Cleanup passes "
            "hold key locks briefly, so a small wait avoids spurious busy errors"
        ),
    )
    size_refresh_interval_seconds: float = Field(
        default=3600.0,
        ge=0,
        description="Re-measure workspace size when the last measurement is older",
    )


class CleanupSettings(_Section):
    """When cleanup runs."""

    timing: CleanupTiming = Field(
        default="immediate", description="immediate, deferred or background"
    )
    background_interval_ms: int = Field(
        default=300_000, gt=0, description="Sweep interval for background timing"
    )


class PreservationSettings(_Section):
    """Failure preservation and retention."""

    preserve_on_failure: bool = True
    preserve_on_timeout: bool = True
    preserve_on_test_failure: bool = True

    failure_retention_days: float = Field(default=7, ge=0)
    timeout_retention_days: float = Field(default=3, ge=0)
    test_failure_retention_days: float = Field(default=7, ge=0)
    max_retention_days: float = Field(default=30, gt=0)
    min_retention_hours: float = Field(default=24, ge=0)

    max_preserved_workspaces: int = Field(default=5, ge=0)
    max_preserved_total_bytes: int = Field(default=5 * GiB, ge=0)
    max_workspace_size_bytes: int = Field(
        default=2 * GiB, gt=0, description="Size above which a workspace is oversized"
    )
    oversized_workspace_policy: OversizedWorkspacePolicy = "warn"
    eviction_strategy: PreservedEvictionStrategy = "oldest-first"

    check_retention_on_access: bool = True
    store_detailed_metadata: bool = True
    log_preservation_events: bool = True


class ErrorHandlingSettings(_Section):
    """Retries and pre-flight checks."""

    max_retries: int = Field(default=3, ge=0)
    initial_retry_delay_ms: int = Field(default=1000, ge=0)
    max_retry_delay_ms: int = Field(default=30_000, ge=0)
    enable_pre_flight_checks: bool = True
    required_disk_space_bytes: int = Field(default=500 * MiB, ge=0)
    enable_corruption_detection: bool = True

    @model_validator(mode="after")
    def check_retry_delays(self) -> "ErrorHandlingSettings":
        if self.max_retry_delay_ms < self.initial_retry_delay_ms:
            raise ValueError(
                "max_retry_delay_ms must not be smaller than initial_retry_delay_ms"
            )
        return self


class WorkspaceManagerConfig(_Section):
    """Complete configuration of a workspace manager."""

    base_directory: Path = Field(
        default_factory=lambda: get_xdg_cache_dir() / "workspaces",
        description="Directory that holds all cached workspaces",
    )
    temp_directory: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()),
        description="Parent directory for temporary workspaces",
    )
    cache: CacheSettings = Field(default_factory=CacheSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    preservation: PreservationSettings = Field(default_factory=PreservationSettings)
    error_handling: ErrorHandlingSettings = Field(
        default_factory=ErrorHandlingSettings
    )

    @field_validator("base_directory", "temp_directory", mode="before")
    @classmethod
    def expand_directory(cls, v: str | Path) -> Path:
        """Expand and resolve directory paths."""
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()
