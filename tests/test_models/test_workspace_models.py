"""Tests for workspace domain models."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from workspool.models.workspace import (
    CleanupReport,
    OperationOutcome,
    PreservationEntry,
    PreservationTrigger,
    WorkspaceHandle,
    WorkspaceRecord,
    WorkspaceRequest,
    WorkspaceState,
)


NOW = datetime(2024, 3, 1, tzinfo=UTC)


class TestWorkspaceRecord:
    """Test index records."""

    def test_cache_value(self):
        """Test records are stored as plain JSON values."""
        record = WorkspaceRecord(
            key="0123456789abcdef",
            repository_url="https://github.com/o/r.git",
            path=Path("/srv/ws/0123456789abcdef"),
            state=WorkspaceState.PRESERVED,
            preservation=PreservationEntry(
                trigger=PreservationTrigger.TIMEOUT, preserved_at=NOW
            ),
        )

        value = record.to_cache_value()
        assert value["state"] == "preserved"
        assert value["preservation"]["trigger"] == "timeout"
        assert value["path"] == "/srv/ws/0123456789abcdef"

        restored = WorkspaceRecord.from_cache_value(value)
        assert restored.path == record.path
        assert restored.preservation.preserved_at == NOW

    def test_defaults(self):
        """Test a new record is active and unmeasured."""
        record = WorkspaceRecord(key="k", repository_url="u", path=Path("/x"))
        assert record.state == WorkspaceState.ACTIVE
        assert record.size_bytes == 0
        assert record.size_measured_at is None
        assert record.created_at.tzinfo is not None

    def test_negative_size_rejected(self):
        """Test sizes cannot be negative."""
        with pytest.raises(ValidationError):
            WorkspaceRecord(key="k", repository_url="u", path=Path("/x"), size_bytes=-1)


class TestPreservationEntry:
    """Test retention expiry."""

    def test_is_expired(self):
        """Test expiry is inclusive of the deadline."""
        entry = PreservationEntry(
            trigger=PreservationTrigger.FAILURE,
            preserved_at=NOW,
            retention_expires_at=NOW + timedelta(days=1),
        )
        assert not entry.is_expired(NOW)
        assert entry.is_expired(NOW + timedelta(days=1))

    def test_without_expiry(self):
        """Test entries without a deadline never expire."""
        entry = PreservationEntry(trigger=PreservationTrigger.MANUAL, preserved_at=NOW)
        assert not entry.is_expired(NOW + timedelta(days=10_000))


class TestWorkspaceRequest:
    """Test request validation."""

    def test_empty_url_rejected(self):
        """Test a repository URL is required."""
        with pytest.raises(ValidationError):
            WorkspaceRequest(repository_url="")

    def test_defaults(self):
        """Test the default branch and operation label."""
        request = WorkspaceRequest(repository_url="https://github.com/o/r.git")
        assert request.branch is None
        assert request.preserve is None
        assert request.operation == "agent-run"


class TestWorkspaceHandle:
    """Test handle release semantics."""

    def test_release_once(self):
        """Test the release callback runs exactly once."""
        release = Mock()
        cleanup = Mock()
        handle = WorkspaceHandle(
            path=Path("/x"),
            is_new=True,
            strategy="persistent",
            key="k",
            _release=release,
            _cleanup=cleanup,
        )
        outcome = OperationOutcome.from_exception(RuntimeError("x"))

        handle.release(outcome)
        handle.release()
        handle.cleanup()

        release.assert_called_once_with(outcome)
        cleanup.assert_called_once_with()
        assert handle.released

    def test_cleanup_releases_as_success(self):
        """Test cleanup without release reports success."""
        release = Mock()
        handle = WorkspaceHandle(
            path=Path("/x"),
            is_new=False,
            strategy="persistent",
            key="k",
            _release=release,
        )

        handle.cleanup()

        outcome = release.call_args.args[0]
        assert outcome.success is True
        assert outcome.trigger is None


class TestCleanupReport:
    """Test cleanup report totals."""

    def test_total_removed(self):
        """Test every kind of removal is counted, skips are not."""
        report = CleanupReport(
            evicted=2, preserved_cap_removed=1, recovered=1, removed=3, skipped_busy=4
        )
        assert report.total_removed == 7
