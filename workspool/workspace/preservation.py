"""Preservation of failed workspaces for post-mortem inspection."""

import logging
from datetime import datetime, timedelta
from typing import Any

from workspool.config.models.workspace import (
    PreservationSettings,
    PreservedEvictionStrategy,
)
from workspool.core.logging import get_logger
from workspool.models.workspace import (
    OperationOutcome,
    PreservationEntry,
    PreservationTrigger,
    WorkspaceRecord,
    WorkspaceState,
    utc_now,
)
from workspool.utils.file_utils import format_bytes
from workspool.workspace.cache_index import CacheIndex


logger = get_logger(__name__)


class PreservationPolicy:
    """Decides which workspaces are kept after a failure and for how long.

    Preserved records are excluded from normal LRU eviction. They return to
    ``idle`` when their retention expires or when the preserved subset
    exceeds its own count/size caps.
    """

    def __init__(self, settings: PreservationSettings, index: CacheIndex):
        self.settings = settings
        self.index = index

    def _log_event(self, event: str, *args: Any, **fields: Any) -> None:
        level = logging.INFO if self.settings.log_preservation_events else logging.DEBUG
        logger.log(level, event, *args, **fields)

    def _trigger_enabled(self, trigger: PreservationTrigger) -> bool:
        return {
            PreservationTrigger.FAILURE: self.settings.preserve_on_failure,
            PreservationTrigger.TIMEOUT: self.settings.preserve_on_timeout,
            PreservationTrigger.TEST_FAILURE: self.settings.preserve_on_test_failure,
            PreservationTrigger.MANUAL: True,
        }[PreservationTrigger(trigger)]

    def should_preserve(
        self, record: WorkspaceRecord, outcome: OperationOutcome
    ) -> bool:
        """Check whether ``outcome`` warrants keeping ``record``.

        Oversized workspaces follow ``oversized_workspace_policy``: ``reject``
        refuses preservation, ``warn`` preserves with a warning, ``allow``
        preserves silently.
        """
        if outcome.success or outcome.trigger is None:
            return False
        if not self._trigger_enabled(PreservationTrigger(outcome.trigger)):
            return False

        if record.size_bytes > self.settings.max_workspace_size_bytes:
            policy = self.settings.oversized_workspace_policy
            if policy == "reject":
                logger.warning(
                    "Not preserving oversized workspace %s (%s > %s)",
                    record.key,
                    format_bytes(record.size_bytes),
                    format_bytes(self.settings.max_workspace_size_bytes),
                )
                return False
            if policy == "warn":
                logger.warning(
                    "Preserving oversized workspace %s (%s)",
                    record.key,
                    format_bytes(record.size_bytes),
                )
        return True

    def _retention_days(self, trigger: PreservationTrigger) -> float | None:
        return {
            PreservationTrigger.FAILURE: self.settings.failure_retention_days,
            PreservationTrigger.TIMEOUT: self.settings.timeout_retention_days,
            PreservationTrigger.TEST_FAILURE: self.settings.test_failure_retention_days,
            PreservationTrigger.MANUAL: None,
        }[PreservationTrigger(trigger)]

    def compute_retention(
        self,
        trigger: PreservationTrigger | str,
        now: datetime | None = None,
        retention_days: float | None = None,
    ) -> datetime | None:
        """Compute when a preservation for ``trigger`` expires.

        The window is clamped between ``min_retention_hours`` and
        ``max_retention_days``.

        Args:
            trigger: What caused the preservation
            now: Reference time, defaults to the current time
            retention_days: Explicit window overriding the per-trigger one

        Returns:
            Expiry time, or None for manual preservation without a window
        """
        now = now or utc_now()
        days = (
            retention_days
            if retention_days is not None
            else self._retention_days(PreservationTrigger(trigger))
        )
        if days is None:
            return None

        window = timedelta(days=days)
        window = max(window, timedelta(hours=self.settings.min_retention_hours))
        window = min(window, timedelta(days=self.settings.max_retention_days))
        return now + window

    def evaluate(
        self,
        record: WorkspaceRecord,
        outcome: OperationOutcome,
        now: datetime | None = None,
    ) -> PreservationEntry | None:
        """Build the preservation entry for a failed outcome, if any."""
        if not self.should_preserve(record, outcome):
            return None
        assert outcome.trigger is not None
        now = now or utc_now()

        metadata: dict[str, Any] = {
            "error_message": outcome.error_message,
            "error_type": outcome.error_type,
            "operation": outcome.operation,
            "size_bytes": record.size_bytes,
            "commit_hash": record.commit_hash,
        }
        if self.settings.store_detailed_metadata and outcome.traceback:
            metadata["traceback"] = outcome.traceback

        entry = PreservationEntry(
            trigger=PreservationTrigger(outcome.trigger),
            preserved_at=now,
            retention_expires_at=self.compute_retention(outcome.trigger, now),
            reason=outcome.error_message or str(outcome.trigger),
            metadata=metadata,
        )
        self._log_event(
            "Preserving workspace after %s",
            outcome.trigger,
            key=record.key,
            path=str(record.path),
            expires=entry.retention_expires_at.isoformat()
            if entry.retention_expires_at
            else None,
        )
        return entry

    def preserve_manual(
        self,
        key: str,
        reason: str = "manual",
        retention_days: float | None = None,
        now: datetime | None = None,
    ) -> WorkspaceRecord | None:
        """Preserve a workspace on explicit request.

        An ``idle`` record becomes ``preserved`` at once; a record reserved by
        a caller keeps its state and becomes ``preserved`` on release.
        """
        now = now or utc_now()
        entry = PreservationEntry(
            trigger=PreservationTrigger.MANUAL,
            preserved_at=now,
            retention_expires_at=self.compute_retention(
                PreservationTrigger.MANUAL, now, retention_days
            ),
            reason=reason,
        )

        def attach(record: WorkspaceRecord) -> WorkspaceRecord:
            changes: dict[str, Any] = {"preservation": entry}
            if record.state in (WorkspaceState.IDLE, WorkspaceState.PRESERVED):
                changes["state"] = WorkspaceState.PRESERVED
            return record.model_copy(update=changes)

        record = self.index.update(key, attach)
        if record is not None:
            self._log_event("Workspace preserved manually", key=key, reason=reason)
        return record

    def reap_expired(self, now: datetime | None = None) -> list[WorkspaceRecord]:
        """Demote preserved records whose retention has passed to ``idle``.

        Returns:
            The demoted records
        """
        now = now or utc_now()
        demoted: list[WorkspaceRecord] = []

        def demote(record: WorkspaceRecord) -> WorkspaceRecord | None:
            if record.state != WorkspaceState.PRESERVED:
                return None
            if record.preservation is not None and not record.preservation.is_expired(
                now
            ):
                return None
            return record.model_copy(
                update={"state": WorkspaceState.IDLE, "preservation": None}
            )

        for record in self.index.list_records([WorkspaceState.PRESERVED]):
            updated = self.index.update(record.key, demote)
            if updated is not None and updated.state == WorkspaceState.IDLE:
                demoted.append(updated)
                self._log_event("Preservation expired", key=record.key)
        return demoted

    def enforce_preserved_caps(
        self,
        max_count: int | None = None,
        max_total_bytes: int | None = None,
        strategy: PreservedEvictionStrategy | None = None,
    ) -> list[WorkspaceRecord]:
        """Demote preserved records until the preserved subset fits its caps.

        Args:
            max_count: Maximum preserved workspaces, defaults to settings
            max_total_bytes: Maximum preserved bytes, defaults to settings
            strategy: ``oldest-first`` or ``largest-first``

        Returns:
            Demoted records, to be deleted by the caller
        """
        max_count = (
            self.settings.max_preserved_workspaces if max_count is None else max_count
        )
        max_total_bytes = (
            self.settings.max_preserved_total_bytes
            if max_total_bytes is None
            else max_total_bytes
        )
        strategy = strategy or self.settings.eviction_strategy

        preserved = self.index.list_records([WorkspaceState.PRESERVED])
        count = len(preserved)
        total = sum(r.size_bytes for r in preserved)
        if count <= max_count and total <= max_total_bytes:
            return []

        if strategy == "largest-first":
            preserved.sort(key=lambda r: (-r.size_bytes, _preserved_at(r), r.key))
        else:
            preserved.sort(key=lambda r: (_preserved_at(r), r.size_bytes, r.key))

        victims: list[WorkspaceRecord] = []
        for record in preserved:
            if count <= max_count and total <= max_total_bytes:
                break
            updated = self.index.update(
                record.key,
                lambda r: r.model_copy(
                    update={"state": WorkspaceState.IDLE, "preservation": None}
                )
                if r.state == WorkspaceState.PRESERVED
                else None,
            )
            count -= 1
            total -= record.size_bytes
            if updated is not None and updated.state == WorkspaceState.IDLE:
                victims.append(updated)
                self._log_event(
                    "Preserved workspace over cap", key=record.key, strategy=strategy
                )
        return victims


def _preserved_at(record: WorkspaceRecord) -> datetime:
    if record.preservation is not None:
        return record.preservation.preserved_at
    return record.last_accessed_at
