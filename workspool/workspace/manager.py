"""Workspace manager: the entry point callers use to obtain workspaces."""

import atexit
import tempfile
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError

from workspool.config.models.workspace import CleanupTiming, WorkspaceManagerConfig
from workspool.config.presets import merge_config
from workspool.core.errors import (
    ConfigError,
    CorruptedWorkspaceError,
    InterruptedOperationError,
)
from workspool.core.logging import get_logger
from workspool.core.retry import RetryPolicy, retry_with_backoff
from workspool.models.workspace import (
    CleanupReport,
    OperationOutcome,
    WorkspaceHandle,
    WorkspaceRecord,
    WorkspaceRequest,
    WorkspaceState,
    WorkspaceStrategy,
    utc_now,
)
from workspool.protocols.credential_provider_protocol import (
    CredentialProviderProtocol,
    GitCredentials,
)
from workspool.protocols.git_provider_protocol import GitProviderProtocol
from workspool.utils.file_utils import directory_size, remove_directory
from workspool.utils.repo_url import redact_url, workspace_key
from workspool.workspace.cache_index import CacheIndex
from workspool.workspace.cleanup_scheduler import BackgroundSweeper, CleanupScheduler
from workspool.workspace.filesystem_guard import (
    ensure_writable_directory,
    run_pre_flight_checks,
)
from workspool.workspace.preservation import PreservationPolicy
from workspool.workspace.recovery import (
    discard_workspace,
    is_incomplete,
    recover_from_interruption,
    validate_integrity,
    with_operation_lock,
)


logger = get_logger(__name__)

T = TypeVar("T")


class WorkspaceManager:
    """Hands out reusable git workspaces and keeps the pool within limits.

    One instance is meant to live for the whole process: build it at the
    composition root (see :func:`create_workspace_manager`), call
    :meth:`start`, pass it to whoever needs workspaces and :meth:`stop` it
    on shutdown. Several processes may share the same base directory.
    """

    def __init__(
        self,
        config: WorkspaceManagerConfig,
        git_provider: GitProviderProtocol,
        credential_provider: CredentialProviderProtocol | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the manager.

        Args:
            config: Workspace manager configuration
            git_provider: Performs clone/fetch operations
            credential_provider: Optional source of per-operation credentials
            sleep: Sleep function used between retries

        Raises:
            PermissionDeniedError: If the base directory is not writable
        """
        self.config = config
        self.git_provider = git_provider
        self.credential_provider = credential_provider
        self._sleep = sleep

        ensure_writable_directory(config.base_directory)
        self.index = CacheIndex(
            config.base_directory, lock_wait_seconds=config.cache.lock_wait_seconds
        )
        self.policy = PreservationPolicy(config.preservation, self.index)
        self.scheduler = CleanupScheduler(config, self.index, self.policy)
        self.retry_policy = RetryPolicy.from_settings(config.error_handling)

        self._sweeper: BackgroundSweeper | None = None
        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._closed = False
        self._atexit_registered = False

    # Lifecycle

    def start(self) -> "WorkspaceManager":
        """Start background cleanup when configured and register shutdown."""
        with self._lifecycle_lock:
            if self._closed:
                raise RuntimeError("Workspace manager has been stopped")
            if self._started:
                return self
            self._started = True
            if self.scheduler.timing == "background":
                self._start_sweeper()
            if not self._atexit_registered:
                atexit.register(self.stop)
                self._atexit_registered = True
        logger.debug(
            "workspace_manager_started",
            base_directory=str(self.config.base_directory),
            timing=self.scheduler.timing,
        )
        return self

    def stop(self) -> None:
        """Stop background cleanup, finish deferred work and close the index."""
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            self._stop_sweeper()
        self.scheduler.wait_for_pending()
        self.scheduler.shutdown()
        self.index.close()
        if self._atexit_registered:
            atexit.unregister(self.stop)
            self._atexit_registered = False
        logger.debug("workspace_manager_stopped")

    def __enter__(self) -> "WorkspaceManager":
        return self.start()

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.stop()

    def _start_sweeper(self) -> None:
        if self._sweeper is None:
            self._sweeper = BackgroundSweeper(
                self.scheduler, self.config.cleanup.background_interval_ms
            )
            self._sweeper.start()

    def _stop_sweeper(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.stop()

    # Acquisition

    def get_workspace(self, request: WorkspaceRequest) -> WorkspaceHandle:
        """Provide a workspace for ``request``.

        The caller must call ``handle.cleanup()`` (or ``handle.release()``)
        when done. A cleanup pass is scheduled according to the configured
        timing.

        Raises:
            WorkspaceBusyError: If the workspace is reserved by someone else
            InsufficientSpaceError: If pre-flight checks fail
            PermissionDeniedError: If pre-flight checks fail
            InterruptedOperationError: If cloning or updating failed
            CorruptedWorkspaceError: If the checkout fails validation twice
        """
        handle = self._acquire(request)
        self._schedule_cleanup()
        return handle

    def with_workspace(
        self, request: WorkspaceRequest, fn: Callable[[WorkspaceHandle], T]
    ) -> T:
        """Run ``fn`` inside a workspace and return its result.

        The outcome of ``fn`` decides what happens to the workspace: success
        returns it to the pool, a failure may preserve it. Cleanup is always
        scheduled and the exception raised by ``fn`` is propagated.
        """
        handle = self._acquire(request)
        try:
            result = fn(handle)
        except BaseException as e:
            self._finish(handle, OperationOutcome.from_exception(e, request.operation))
            raise
        self._finish(handle, OperationOutcome.succeeded(request.operation))
        return result

    def _finish(self, handle: WorkspaceHandle, outcome: OperationOutcome) -> None:
        try:
            handle.release(outcome)
        finally:
            handle.cleanup()

    def _acquire(self, request: WorkspaceRequest) -> WorkspaceHandle:
        key = workspace_key(request.repository_url, request.branch)
        log = logger.bind(
            key=key,
            repository=redact_url(request.repository_url),
            branch=request.branch,
        )

        errors = self.config.error_handling
        if errors.enable_pre_flight_checks:
            run_pre_flight_checks(
                self.config.base_directory, errors.required_disk_space_bytes
            )
        if self.config.preservation.check_retention_on_access:
            self.policy.reap_expired()

        strategy = self._choose_strategy(key, request)
        log.debug("workspace_requested", strategy=strategy)
        if strategy == "temporary":
            return self._acquire_temporary(request, key)
        return self._acquire_persistent(request, key)

    def _choose_strategy(
        self, key: str, request: WorkspaceRequest
    ) -> WorkspaceStrategy:
        if self.index.get(key) is not None:
            return "persistent"
        estimate = request.estimated_size_bytes
        if estimate is not None and estimate < self.config.cache.size_threshold_bytes:
            return "temporary"
        return "persistent"

    def _credentials(self, repository_url: str) -> GitCredentials | None:
        if self.credential_provider is None:
            return None
        return self.credential_provider.get_credentials(repository_url)

    @staticmethod
    def _is_reusable(record: WorkspaceRecord) -> bool:
        path = Path(record.path)
        return path.is_dir() and not is_incomplete(path)

    def _acquire_persistent(
        self, request: WorkspaceRequest, key: str
    ) -> WorkspaceHandle:
        record, is_new = self.index.lookup_or_reserve(
            key,
            redact_url(request.repository_url),
            request.branch,
            validator=self._is_reusable,
        )
        path = Path(record.path)
        try:
            commit_hash, is_new = self._provision(path, is_new, request)
            record = self._record_provisioned(record, commit_hash)
            if request.preserve is not None and request.preserve.enabled:
                self.policy.preserve_manual(
                    key, request.preserve.reason, request.preserve.retention_days
                )
        except Exception as e:
            # Marker left by a failed operation turns the record into "locked",
            # a failed integrity check leaves it for the next cleanup pass
            self.index.release(
                key,
                OperationOutcome.from_exception(e, "provision"),
                state=(
                    WorkspaceState.CORRUPTED
                    if isinstance(e, CorruptedWorkspaceError)
                    else None
                ),
            )
            logger.error(
                "workspace_provisioning_failed", key=key, path=str(path), error=str(e)
            )
            raise

        logger.info(
            "workspace_ready",
            key=key,
            path=str(path),
            is_new=is_new,
            commit=commit_hash,
        )
        return WorkspaceHandle(
            path=path,
            is_new=is_new,
            strategy="persistent",
            key=key,
            commit_hash=commit_hash,
            _release=lambda outcome: self._release(key, path, outcome),
            _cleanup=self._schedule_cleanup,
        )

    def _record_provisioned(
        self, record: WorkspaceRecord, commit_hash: str
    ) -> WorkspaceRecord:
        now = utc_now()
        changes: dict[str, object] = {
            "commit_hash": commit_hash,
            "last_accessed_at": now,
        }
        refresh_after = self.config.cache.size_refresh_interval_seconds
        measured_at = record.size_measured_at
        if measured_at is None or (now - measured_at).total_seconds() >= refresh_after:
            changes["size_bytes"] = directory_size(Path(record.path))
            changes["size_measured_at"] = now
        return self.index.set_fields(record.key, **changes) or record

    def _release(self, key: str, path: Path, outcome: OperationOutcome) -> None:
        if not outcome.success:
            # Preservation decisions need the current size
            self.index.set_fields(
                key, size_bytes=directory_size(path), size_measured_at=utc_now()
            )
        record = self.index.release(key, outcome, self.policy)
        if record is not None and record.state == WorkspaceState.PRESERVED:
            logger.info("workspace_preserved", key=key, path=str(path))

    def _provision(
        self, path: Path, is_new: bool, request: WorkspaceRequest
    ) -> tuple[str, bool]:
        credentials = self._credentials(request.repository_url)

        if not is_new and recover_from_interruption(path):
            is_new = True

        commit_hash: str | None = None
        if not is_new:
            try:
                commit_hash = self._locked_with_retry(
                    path,
                    "update",
                    lambda: self.git_provider.fetch_and_reset(path, credentials),
                )
            except InterruptedOperationError as e:
                logger.warning("workspace_update_failed", path=str(path), error=str(e))
                discard_workspace(path)
                is_new = True

        if is_new:
            commit_hash = self._clone(path, request, credentials)

        if self.config.error_handling.enable_corruption_detection:
            try:
                validate_integrity(path, self.git_provider)
            except CorruptedWorkspaceError as e:
                logger.warning("workspace_corrupted", path=str(path), reason=e.reason)
                commit_hash = self._clone(path, request, credentials)
                is_new = True
                validate_integrity(path, self.git_provider)

        assert commit_hash is not None
        return commit_hash, is_new

    def _clone(
        self,
        path: Path,
        request: WorkspaceRequest,
        credentials: GitCredentials | None,
    ) -> str:
        discard_workspace(path)

        def clone_once() -> str:
            # Start every attempt from an empty destination
            remove_directory(path)
            return self.git_provider.clone(
                request.repository_url, path, request.branch, credentials
            )

        return self._locked_with_retry(path, "clone", clone_once)

    def _locked_with_retry(
        self, path: Path, operation: str, fn: Callable[[], str]
    ) -> str:
        return with_operation_lock(
            path,
            operation,
            lambda: retry_with_backoff(
                fn,
                self.retry_policy,
                operation=f"{operation} {path.name}",
                sleep=self._sleep,
            ),
        )

    def _acquire_temporary(
        self, request: WorkspaceRequest, key: str
    ) -> WorkspaceHandle:
        self.config.temp_directory.mkdir(parents=True, exist_ok=True)
        path = Path(
            tempfile.mkdtemp(prefix="workspace-", dir=self.config.temp_directory)
        )
        credentials = self._credentials(request.repository_url)

        def clone_once() -> str:
            remove_directory(path)
            return self.git_provider.clone(
                request.repository_url, path, request.branch, credentials
            )

        try:
            commit_hash = retry_with_backoff(
                clone_once,
                self.retry_policy,
                operation=f"clone {key} (temporary)",
                sleep=self._sleep,
            )
        except Exception:
            remove_directory(path)
            raise

        logger.info("temporary_workspace_ready", key=key, path=str(path))
        return WorkspaceHandle(
            path=path,
            is_new=True,
            strategy="temporary",
            key=key,
            commit_hash=commit_hash,
            _cleanup=lambda: self._remove_temporary(path),
        )

    def _remove_temporary(self, path: Path) -> None:
        def remove() -> CleanupReport:
            report = CleanupReport()
            if remove_directory(path):
                report.removed += 1
            return report

        # The sweeper does not know about temporary workspaces
        timing = "immediate" if self.scheduler.timing == "background" else None
        self.scheduler.dispatch(remove, timing)

    def _schedule_cleanup(self) -> None:
        try:
            self.scheduler.schedule()
        except Exception as e:
            logger.exception("Cleanup scheduling failed: %s", e)

    # Cleanup API

    def cleanup_workspace(
        self,
        path: str | Path,
        *,
        timing: CleanupTiming | None = None,
        force: bool = False,
    ) -> CleanupReport | None:
        """Remove one workspace.

        Args:
            path: Workspace directory, must be below the base directory
                unless ``force`` is set
            timing: Overrides the configured cleanup timing
            force: Allow paths outside the base directory

        Returns:
            The removal report for immediate timing, None otherwise

        Raises:
            CannotCleanupBaseDirectoryError: If ``path`` is the base directory
            UnsafePathError: If ``path`` is outside the base directory
            WorkspaceBusyError: If the workspace is in use
        """
        return self.scheduler.remove_path(Path(path), force=force, timing=timing)

    def cleanup_all_workspaces(
        self,
        *,
        timing: CleanupTiming | None = None,
        evict_all: bool = False,
    ) -> CleanupReport | None:
        """Remove every workspace that is not in use.

        Args:
            timing: Overrides the configured cleanup timing
            evict_all: Also remove preserved workspaces
        """
        return self.scheduler.remove_all(include_preserved=evict_all, timing=timing)

    def run_cleanup(self) -> CleanupReport:
        """Run a full cleanup pass synchronously."""
        return self.scheduler.run_pass()

    def get_cleanup_timing(self) -> CleanupTiming:
        return self.scheduler.timing

    def set_cleanup_timing(self, timing: CleanupTiming) -> None:
        """Switch the cleanup timing, starting or stopping the sweeper.

        Raises:
            ConfigError: If ``timing`` is not a known timing
        """
        try:
            self.config.cleanup.timing = timing
        except ValidationError as e:
            raise ConfigError(
                f"Invalid cleanup timing: {timing}", context={"timing": timing}
            ) from e

        previous, self.scheduler.timing = self.scheduler.timing, timing
        with self._lifecycle_lock:
            if self._started and not self._closed:
                if timing == "background" and previous != "background":
                    self._start_sweeper()
                elif timing != "background":
                    self._stop_sweeper()
        logger.info("cleanup_timing_changed", previous=previous, timing=timing)

    # Inspection

    def preserve_workspace(
        self,
        target: WorkspaceRequest | str,
        reason: str = "manual",
        retention_days: float | None = None,
    ) -> WorkspaceRecord | None:
        """Preserve a workspace identified by request or key.

        Returns:
            The updated record, None if no such workspace is indexed
        """
        key = (
            workspace_key(target.repository_url, target.branch)
            if isinstance(target, WorkspaceRequest)
            else target
        )
        return self.policy.preserve_manual(key, reason, retention_days)

    def list_workspaces(
        self, states: list[WorkspaceState] | None = None
    ) -> list[WorkspaceRecord]:
        return self.index.list_records(states)

    def get_workspace_record(self, key: str) -> WorkspaceRecord | None:
        return self.index.get(key)

    def get_config(self) -> WorkspaceManagerConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, overrides: Mapping[str, Any]) -> WorkspaceManagerConfig:
        """Apply partial configuration overrides to the running manager.

        The base directory is fixed for the lifetime of the manager.

        Raises:
            ConfigError: If the result is invalid or moves the base directory
        """
        new_config = merge_config(overrides, base=self.config)
        if new_config.base_directory != self.config.base_directory:
            raise ConfigError(
                "base_directory cannot be changed on a running manager",
                context={"base_directory": str(new_config.base_directory)},
            )

        timing = new_config.cleanup.timing
        new_config.cleanup.timing = self.scheduler.timing
        self.config = new_config
        self.scheduler.config = new_config
        self.policy.settings = new_config.preservation
        self.index.lock_wait_seconds = new_config.cache.lock_wait_seconds
        self.retry_policy = RetryPolicy.from_settings(new_config.error_handling)
        if timing != self.scheduler.timing:
            self.set_cleanup_timing(timing)
        elif self._sweeper is not None:
            interval = new_config.cleanup.background_interval_ms / 1000.0
            self._sweeper.interval = interval

        logger.info("workspace_config_updated", sections=sorted(overrides))
        return self.get_config()


__all__ = ["WorkspaceManager"]
