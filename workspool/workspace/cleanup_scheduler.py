"""Cleanup scheduling: eviction, retention reaping and physical removal.

The scheduler is the only component that deletes workspace directories
outside of recovery. Every deletion holds the workspace's key lock, so a
directory in use by any process is never removed.
"""

import os
import re
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from datetime import datetime
from pathlib import Path

import psutil

from workspool.config.models.workspace import CleanupTiming, WorkspaceManagerConfig
from workspool.core.errors import UnsafePathError, WorkspaceBusyError
from workspool.core.logging import get_logger
from workspool.models.workspace import CleanupReport, WorkspaceRecord, WorkspaceState
from workspool.utils.file_utils import format_bytes
from workspool.workspace.cache_index import STATE_DIR_NAME, CacheIndex
from workspool.workspace.filesystem_guard import validate_managed_path
from workspool.workspace.key_lock import read_lock_holder
from workspool.workspace.preservation import PreservationPolicy
from workspool.workspace.recovery import LOCK_SUFFIX, discard_workspace


logger = get_logger(__name__)

WORKSPACE_DIR_PATTERN = re.compile(r"^[0-9a-f]{16}$")

STALE_STATES = (WorkspaceState.LOCKED, WorkspaceState.CORRUPTED)


class CleanupScheduler:
    """Runs cleanup passes according to the configured timing."""

    def __init__(
        self,
        config: WorkspaceManagerConfig,
        index: CacheIndex,
        policy: PreservationPolicy,
    ):
        self.config = config
        self.index = index
        self.policy = policy
        self.timing: CleanupTiming = config.cleanup.timing
        self._pass_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._pending: set[Future[object]] = set()

    @property
    def base_directory(self) -> Path:
        return self.index.base_directory

    # Physical removal

    def _remove_record(
        self,
        record: WorkspaceRecord,
        report: CleanupReport,
        allowed_states: Iterable[WorkspaceState] | None = None,
    ) -> bool:
        lock = self.index.try_key_lock(record.key)
        if lock is None:
            logger.debug("Skipping busy workspace %s", record.key)
            report.skipped_busy += 1
            return False
        try:
            current = self.index.get(record.key)
            if current is None:
                return False
            if allowed_states is not None and current.state not in tuple(
                allowed_states
            ):
                return False
            path = validate_managed_path(current.path, self.base_directory)
            discard_workspace(path)
            self.index.delete(current.key)
            report.freed_bytes += current.size_bytes
            logger.info(
                "workspace_removed",
                key=current.key,
                state=current.state,
                size=format_bytes(current.size_bytes),
            )
            return True
        except UnsafePathError as e:
            logger.error("Refusing to remove workspace %s: %s", record.key, e)
            report.failed += 1
            return False
        except OSError as e:
            logger.error("Failed to remove workspace %s: %s", record.key, e)
            report.failed += 1
            return False
        finally:
            lock.release()

    def _remove_orphan_directories(self, report: CleanupReport) -> None:
        if not self.base_directory.is_dir():
            return
        for entry in self.base_directory.iterdir():
            if entry.name == STATE_DIR_NAME:
                continue
            name = entry.name.removesuffix(LOCK_SUFFIX)
            if not WORKSPACE_DIR_PATTERN.match(name) or self.index.get(name):
                continue
            lock = self.index.try_key_lock(name)
            if lock is None:
                continue
            try:
                # Re-check, a reservation may have been created meanwhile
                if self.index.get(name) is None:
                    discard_workspace(self.base_directory / name)
                    report.removed += 1
                    logger.info("orphan_workspace_removed", key=name)
            except OSError as e:
                logger.error("Failed to remove orphan workspace %s: %s", name, e)
                report.failed += 1
            finally:
                lock.release()

    @staticmethod
    def _owner_running(record: WorkspaceRecord) -> bool:
        # Owned by another live process, taking its key lock would race it
        pid = record.owner_pid
        return pid is not None and pid != os.getpid() and psutil.pid_exists(pid)

    def _reconcile_stale_records(self, report: CleanupReport) -> None:
        for record in self.index.list_records():
            state = WorkspaceState(record.state)
            if state in STALE_STATES:
                if self._remove_record(record, report, STALE_STATES):
                    report.recovered += 1
            elif state == WorkspaceState.ACTIVE:
                if self._owner_running(record):
                    continue
                lock = self.index.try_key_lock(record.key)
                if lock is None:
                    continue
                try:
                    # Holder is gone, hand the workspace back to the pool
                    logger.warning(
                        "Reclaiming workspace %s abandoned by pid %s",
                        record.key,
                        record.owner_pid,
                    )
                    self.index.update(
                        record.key,
                        lambda r: r.model_copy(
                            update={"state": WorkspaceState.IDLE, "owner_pid": None}
                        )
                        if r.state == WorkspaceState.ACTIVE
                        else None,
                    )
                finally:
                    lock.release()
            elif state == WorkspaceState.IDLE and not Path(record.path).exists():
                lock = self.index.try_key_lock(record.key)
                if lock is None:
                    continue
                try:
                    if self.index.get(record.key) is not None:
                        self.index.delete(record.key)
                        logger.debug(
                            "Dropped index entry without directory %s", record.key
                        )
                finally:
                    lock.release()

    def run_pass(self, now: datetime | None = None) -> CleanupReport:
        """Run one full cleanup pass.

        Order: reap expired preservations, enforce preserved caps, remove
        workspaces marked for removal, clear stale and orphaned entries,
        then evict least-recently-used idle workspaces.

        Returns:
            What the pass did; failures are counted, never raised
        """
        report = CleanupReport()
        with self._pass_lock:
            report.expired = len(self.policy.reap_expired(now))

            for victim in self.policy.enforce_preserved_caps():
                if self._remove_record(victim, report, [WorkspaceState.IDLE]):
                    report.preserved_cap_removed += 1

            for record in self.index.list_records():
                if record.removal_requested and record.state != WorkspaceState.ACTIVE:
                    if self._remove_record(record, report):
                        report.removed += 1

            self._reconcile_stale_records(report)
            self._remove_orphan_directories(report)

            cache = self.config.cache
            for candidate in self.index.select_eviction_candidates(
                cache.max_workspaces, cache.max_total_bytes
            ):
                if self._remove_record(candidate, report, [WorkspaceState.IDLE]):
                    report.evicted += 1

        if report.total_removed or report.expired or report.failed:
            logger.info(
                "cleanup_pass_finished",
                evicted=report.evicted,
                expired=report.expired,
                preserved_cap_removed=report.preserved_cap_removed,
                recovered=report.recovered,
                removed=report.removed,
                failed=report.failed,
                freed=format_bytes(report.freed_bytes),
            )
        return report

    # Timing

    def _submit(self, fn: Callable[[], object]) -> Future[object]:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="workspool-cleanup"
                )
            future = self._executor.submit(self._run_logged, fn)
            self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        return future

    @staticmethod
    def _run_logged(fn: Callable[[], object]) -> object:
        try:
            return fn()
        except Exception as e:
            logger.exception("Deferred cleanup failed: %s", e)
            return None

    def dispatch(
        self,
        fn: Callable[[], CleanupReport],
        timing: CleanupTiming | None = None,
    ) -> CleanupReport | None:
        """Run ``fn`` now or in the deferred worker depending on timing.

        With ``background`` timing nothing runs here; the sweeper owns it.
        """
        timing = timing or self.timing
        if timing == "immediate":
            return fn()
        if timing == "deferred":
            self._submit(fn)
        return None

    def schedule(self, timing: CleanupTiming | None = None) -> CleanupReport | None:
        """Schedule a cleanup pass according to ``timing``."""
        return self.dispatch(self.run_pass, timing)

    def remove_path(
        self,
        path: Path,
        force: bool = False,
        timing: CleanupTiming | None = None,
    ) -> CleanupReport | None:
        """Remove one workspace directory.

        The path is validated before anything is scheduled, so an unsafe
        path raises immediately whatever the timing.

        Raises:
            CannotCleanupBaseDirectoryError: For the base directory itself
            UnsafePathError: For paths outside the base directory without force
            WorkspaceBusyError: If the workspace is reserved (immediate timing)
        """
        target = validate_managed_path(path, self.base_directory, force=force)
        record = self.index.find_by_path(target)
        timing = timing or self.timing

        if timing == "background":
            if record is not None:
                self.index.set_fields(record.key, removal_requested=True)
                return None
            # Nothing indexed to flag, remove it right away
            timing = "immediate"

        def remove() -> CleanupReport:
            report = CleanupReport()
            if record is None:
                if discard_workspace(target):
                    report.removed += 1
                    logger.info("workspace_path_removed", path=str(target))
                return report
            if not self._remove_record(record, report):
                if report.skipped_busy:
                    raise WorkspaceBusyError(
                        record.key,
                        read_lock_holder(
                            self.index.lock_directory / f"{record.key}.lock"
                        ),
                    )
                return report
            report.removed += 1
            return report

        return self.dispatch(remove, timing)

    def remove_all(
        self,
        include_preserved: bool = False,
        timing: CleanupTiming | None = None,
    ) -> CleanupReport | None:
        """Remove every workspace not currently reserved.

        Args:
            include_preserved: Also remove preserved workspaces
            timing: Overrides the configured timing
        """
        states = [WorkspaceState.IDLE, *STALE_STATES]
        if include_preserved:
            states.append(WorkspaceState.PRESERVED)
        timing = timing or self.timing

        if timing == "background":
            for record in self.index.list_records(states):
                self.index.set_fields(record.key, removal_requested=True)
            return None

        def remove_all() -> CleanupReport:
            report = CleanupReport()
            for record in self.index.list_records(states):
                if self._remove_record(record, report, states):
                    report.removed += 1
            self._remove_orphan_directories(report)
            return report

        return self.dispatch(remove_all, timing)

    def wait_for_pending(self, timeout: float | None = None) -> bool:
        """Wait for deferred work submitted so far.

        Returns:
            True if everything finished within ``timeout``
        """
        with self._executor_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _done, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


class BackgroundSweeper:
    """Daemon thread running a cleanup pass at a fixed interval."""

    def __init__(self, scheduler: CleanupScheduler, interval_ms: int):
        self.scheduler = scheduler
        self.interval = interval_ms / 1000.0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sweeping; the first pass runs right away.

        Raises:
            RuntimeError: If the sweeper is already running
        """
        if self.is_running:
            raise RuntimeError("Background cleanup is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="workspool-sweeper", daemon=True
        )
        self._thread.start()
        logger.info("background_cleanup_started", interval_s=self.interval)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.scheduler.run_pass()
            except Exception as e:
                logger.exception("Background cleanup pass failed: %s", e)
            self._stop_event.wait(self.interval)

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop the sweeper and wait for the current pass to finish."""
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout=timeout)
        logger.info("background_cleanup_stopped")
