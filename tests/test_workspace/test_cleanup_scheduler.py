"""Tests for cleanup passes, explicit removal and background sweeping."""

import time
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from workspool.config.models.workspace import WorkspaceManagerConfig
from workspool.core.errors import (
    CannotCleanupBaseDirectoryError,
    UnsafePathError,
    WorkspaceBusyError,
)
from workspool.models.workspace import (
    PreservationEntry,
    PreservationTrigger,
    WorkspaceRecord,
    WorkspaceState,
)
from workspool.workspace.cache_index import CacheIndex
from workspool.workspace.cleanup_scheduler import BackgroundSweeper, CleanupScheduler
from workspool.workspace.key_lock import KeyLock
from workspool.workspace.preservation import PreservationPolicy
from workspool.workspace.recovery import has_operation_lock, operation_lock_path


T0 = datetime(2024, 1, 1, tzinfo=UTC)


def key(n: int) -> str:
    return f"{n:016x}"


@pytest.fixture
def scheduler(
    workspace_config: WorkspaceManagerConfig, cache_index: CacheIndex
) -> Generator[CleanupScheduler, None, None]:
    policy = PreservationPolicy(workspace_config.preservation, cache_index)
    scheduler = CleanupScheduler(workspace_config, cache_index, policy)
    yield scheduler
    scheduler.shutdown()


@pytest.fixture
def add_workspace(
    cache_index: CacheIndex, make_checkout: Callable[..., Path]
) -> Callable[..., WorkspaceRecord]:
    """Index a workspace and create its directory."""

    def add(
        n: int,
        state: WorkspaceState = WorkspaceState.IDLE,
        age_minutes: int = 0,
        size: int = 100,
        preservation: PreservationEntry | None = None,
        create_directory: bool = True,
        **fields: object,
    ) -> WorkspaceRecord:
        record = WorkspaceRecord(
            key=key(n),
            repository_url=f"https://github.com/example/repo-{n}.git",
            path=cache_index.workspace_path(key(n)),
            size_bytes=size,
            last_accessed_at=T0 + timedelta(minutes=age_minutes),
            state=state,
            preservation=preservation,
            **fields,
        )
        if create_directory:
            make_checkout(record.path)
        cache_index.put(record)
        return record

    return add


def preserved(days_ago: int = 0, expires_in: int | None = None) -> PreservationEntry:
    now = datetime.now(UTC)
    return PreservationEntry(
        trigger=PreservationTrigger.FAILURE,
        preserved_at=now - timedelta(days=days_ago),
        retention_expires_at=(
            now + timedelta(days=expires_in) if expires_in is not None else None
        ),
    )


class TestRunPass:
    """Test a full cleanup pass."""

    def test_evicts_least_recently_used(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test the oldest idle workspaces are removed over the count limit."""
        scheduler.config.cache.max_workspaces = 2
        records = [add_workspace(i, age_minutes=i, size=10 * (i + 1)) for i in range(3)]

        report = scheduler.run_pass()

        assert report.evicted == 1
        assert report.freed_bytes == 10
        assert cache_index.get(key(0)) is None
        assert not records[0].path.exists()
        assert records[1].path.exists()
        assert records[2].path.exists()

    def test_busy_workspace_is_skipped(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test a workspace whose key lock is held elsewhere survives."""
        scheduler.config.cache.max_workspaces = 1
        oldest = add_workspace(0)
        add_workspace(1, age_minutes=5)

        with KeyLock(cache_index.lock_directory, oldest.key):
            report = scheduler.run_pass()

        assert report.evicted == 0
        assert report.skipped_busy == 1
        assert oldest.path.exists()
        assert cache_index.get(oldest.key) is not None

    def test_preserved_workspaces_are_not_evicted(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test preserved records neither count nor get evicted."""
        scheduler.config.cache.max_workspaces = 1
        kept = add_workspace(0, WorkspaceState.PRESERVED, preservation=preserved())
        add_workspace(1, age_minutes=5)

        report = scheduler.run_pass()

        assert report.evicted == 0
        assert kept.path.exists()
        assert cache_index.get(kept.key).state == WorkspaceState.PRESERVED

    def test_preserved_over_cap_are_removed(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test the oldest preservation goes when the preserved cap is hit."""
        scheduler.policy.settings.max_preserved_workspaces = 1
        old = add_workspace(0, WorkspaceState.PRESERVED, preservation=preserved(3))
        new = add_workspace(1, WorkspaceState.PRESERVED, preservation=preserved(1))

        report = scheduler.run_pass()

        assert report.preserved_cap_removed == 1
        assert not old.path.exists()
        assert cache_index.get(old.key) is None
        assert cache_index.get(new.key).state == WorkspaceState.PRESERVED

    def test_expired_preservation_returns_to_pool(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test expired preservations become idle and stay on disk."""
        record = add_workspace(
            0, WorkspaceState.PRESERVED, preservation=preserved(10, expires_in=-1)
        )

        report = scheduler.run_pass()

        assert report.expired == 1
        assert cache_index.get(record.key).state == WorkspaceState.IDLE
        assert record.path.exists()

    def test_locked_record_is_recovered(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test an interrupted workspace and its marker are removed."""
        record = add_workspace(0, WorkspaceState.LOCKED)
        operation_lock_path(record.path).write_text("{}")

        report = scheduler.run_pass()

        assert report.recovered == 1
        assert not record.path.exists()
        assert not has_operation_lock(record.path)
        assert cache_index.get(record.key) is None

    def test_abandoned_active_record_is_reclaimed(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test an active record nobody holds goes back to idle."""
        record = add_workspace(0, WorkspaceState.ACTIVE, owner_pid=999_999)

        with patch(
            "workspool.workspace.cleanup_scheduler.psutil.pid_exists",
            return_value=False,
        ):
            scheduler.run_pass()

        reclaimed = cache_index.get(record.key)
        assert reclaimed.state == WorkspaceState.IDLE
        assert reclaimed.owner_pid is None
        assert record.path.exists()

    def test_active_record_of_running_process_is_skipped(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test the key lock of a live owner is left untouched."""
        record = add_workspace(0, WorkspaceState.ACTIVE, owner_pid=4242)

        with (
            patch(
                "workspool.workspace.cleanup_scheduler.psutil.pid_exists",
                return_value=True,
            ),
            patch.object(
                cache_index, "try_key_lock", wraps=cache_index.try_key_lock
            ) as try_key_lock,
        ):
            scheduler.run_pass()

        try_key_lock.assert_not_called()
        current = cache_index.get(record.key)
        assert current.state == WorkspaceState.ACTIVE
        assert current.owner_pid == 4242

    def test_active_record_reserved_here_is_kept(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex
    ):
        """Test a live reservation of this process is left alone."""
        record, _ = cache_index.lookup_or_reserve(
            key(0), "https://github.com/example/repo.git"
        )

        scheduler.run_pass()

        assert cache_index.get(record.key).state == WorkspaceState.ACTIVE

    def test_orphans_are_removed(
        self,
        scheduler: CleanupScheduler,
        base_dir: Path,
        make_checkout: Callable[..., Path],
    ):
        """Test unindexed workspace directories and markers are removed."""
        orphan = make_checkout(base_dir / key(9))
        marker = base_dir / f"{key(8)}.op-lock"
        marker.write_text("{}")
        unrelated = base_dir / "notes"
        unrelated.mkdir()

        report = scheduler.run_pass()

        assert report.removed == 2
        assert not orphan.exists()
        assert not marker.exists()
        assert unrelated.exists()
        assert (base_dir / ".workspool").exists()

    def test_idle_entry_without_directory_is_dropped(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test index entries whose directory vanished are deleted."""
        record = add_workspace(0, create_directory=False)

        scheduler.run_pass()

        assert cache_index.get(record.key) is None

    def test_removal_requested(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test workspaces flagged for removal are deleted."""
        record = add_workspace(0, removal_requested=True)
        kept = add_workspace(1)

        report = scheduler.run_pass()

        assert report.removed == 1
        assert not record.path.exists()
        assert kept.path.exists()


class TestRemovePath:
    """Test explicit removal of one workspace."""

    def test_indexed_workspace(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test an indexed workspace is removed with its record."""
        record = add_workspace(0)

        report = scheduler.remove_path(record.path)

        assert report.removed == 1
        assert not record.path.exists()
        assert cache_index.get(record.key) is None

    def test_unsafe_path_deletes_nothing(
        self, scheduler: CleanupScheduler, tmp_path: Path
    ):
        """Test a path outside the base directory is refused."""
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        (outside / "important.txt").write_text("keep")

        with pytest.raises(UnsafePathError):
            scheduler.remove_path(outside)
        assert (outside / "important.txt").exists()

    @pytest.mark.parametrize("force", [False, True])
    def test_base_directory_is_refused(
        self, scheduler: CleanupScheduler, base_dir: Path, force: bool
    ):
        """Test the base directory cannot be removed even with force."""
        with pytest.raises(CannotCleanupBaseDirectoryError):
            scheduler.remove_path(base_dir, force=force)
        assert base_dir.exists()

    def test_force_outside_path(self, scheduler: CleanupScheduler, tmp_path: Path):
        """Test force removes a directory outside the base directory."""
        outside = tmp_path / "elsewhere"
        outside.mkdir()

        report = scheduler.remove_path(outside, force=True)

        assert report.removed == 1
        assert not outside.exists()

    def test_busy_workspace(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test WorkspaceBusyError while another holder has the key."""
        record = add_workspace(0)

        with (
            KeyLock(cache_index.lock_directory, record.key, {"operation": "build"}),
            pytest.raises(WorkspaceBusyError, match="operation=build"),
        ):
            scheduler.remove_path(record.path)
        assert record.path.exists()

    def test_background_flags_for_removal(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test background timing only flags the record."""
        record = add_workspace(0)

        assert scheduler.remove_path(record.path, timing="background") is None
        assert cache_index.get(record.key).removal_requested is True
        assert record.path.exists()

        scheduler.run_pass()
        assert not record.path.exists()

    def test_deferred(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, add_workspace
    ):
        """Test deferred timing removes the workspace off the caller's thread."""
        scheduler.timing = "deferred"
        record = add_workspace(0)

        assert scheduler.remove_path(record.path) is None
        assert scheduler.wait_for_pending(timeout=10)
        assert not record.path.exists()
        assert cache_index.get(record.key) is None


class TestRemoveAll:
    """Test removal of every workspace."""

    @pytest.fixture
    def populated(self, add_workspace) -> dict[str, WorkspaceRecord]:
        return {
            "idle": add_workspace(0),
            "locked": add_workspace(1, WorkspaceState.LOCKED),
            "preserved": add_workspace(
                2, WorkspaceState.PRESERVED, preservation=preserved()
            ),
            "active": add_workspace(3, WorkspaceState.ACTIVE),
        }

    def test_keeps_preserved_and_active(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, populated
    ):
        """Test preserved and reserved workspaces survive by default."""
        report = scheduler.remove_all()

        assert report.removed == 2
        assert cache_index.get(populated["idle"].key) is None
        assert cache_index.get(populated["locked"].key) is None
        assert populated["preserved"].path.exists()
        assert populated["active"].path.exists()

    def test_include_preserved(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, populated
    ):
        """Test preserved workspaces go too when asked."""
        report = scheduler.remove_all(include_preserved=True)

        assert report.removed == 3
        assert not populated["preserved"].path.exists()
        assert cache_index.get(populated["active"].key) is not None

    def test_background(
        self, scheduler: CleanupScheduler, cache_index: CacheIndex, populated
    ):
        """Test background timing flags every removable record."""
        assert scheduler.remove_all(timing="background") is None
        assert cache_index.get(populated["idle"].key).removal_requested is True
        assert cache_index.get(populated["preserved"].key).removal_requested is False
        assert populated["idle"].path.exists()


def wait_until(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestBackgroundSweeper:
    """Test the background sweeper thread."""

    def test_runs_passes_until_stopped(self):
        """Test passes repeat at the interval and stop cleanly."""
        scheduler = Mock()
        sweeper = BackgroundSweeper(scheduler, interval_ms=10)

        sweeper.start()
        try:
            assert sweeper.is_running
            assert wait_until(lambda: scheduler.run_pass.call_count >= 2)
        finally:
            sweeper.stop()
        assert not sweeper.is_running

    def test_double_start(self):
        """Test starting twice raises."""
        sweeper = BackgroundSweeper(Mock(), interval_ms=60_000)
        sweeper.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                sweeper.start()
        finally:
            sweeper.stop()

    def test_failing_pass_keeps_running(self):
        """Test a pass raising does not kill the thread."""
        scheduler = Mock()
        scheduler.run_pass.side_effect = RuntimeError("disk on fire")
        sweeper = BackgroundSweeper(scheduler, interval_ms=10)

        sweeper.start()
        try:
            assert wait_until(lambda: scheduler.run_pass.call_count >= 2)
            assert sweeper.is_running
        finally:
            sweeper.stop()

    def test_stop_without_start(self):
        """Test stopping an idle sweeper is harmless."""
        BackgroundSweeper(Mock(), interval_ms=10).stop()
