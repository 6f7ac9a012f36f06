"""Persistent index of cached workspaces.

Records live in a ``diskcache.Cache`` (SQLite) below the base directory so
every process sharing the base directory sees the same index. Writes that
depend on a previous read run inside ``Cache.transact()``; the reservation
of a key is additionally guarded by a :class:`KeyLock` held until release.
"""

import logging
import os
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import diskcache  # type: ignore[import-untyped]

from workspool.core.errors import WorkspaceBusyError
from workspool.models.workspace import (
    OperationOutcome,
    WorkspaceRecord,
    WorkspaceState,
    utc_now,
)
from workspool.workspace.key_lock import KeyLock
from workspool.workspace.recovery import has_operation_lock


if TYPE_CHECKING:
    from workspool.workspace.preservation import PreservationPolicy


logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".workspool"
RECORD_PREFIX = "workspace:"

RecordValidator = Callable[[WorkspaceRecord], bool]

REUSABLE_STATES = {
    WorkspaceState.IDLE,
    WorkspaceState.PRESERVED,
    WorkspaceState.ACTIVE,
}


def eviction_order(record: WorkspaceRecord) -> tuple[datetime, int, str]:
    """Oldest access first, then smaller size, then key."""
    return (record.last_accessed_at, record.size_bytes, record.key)


class CacheIndex:
    """Authoritative store of :class:`WorkspaceRecord` objects."""

    def __init__(
        self,
        base_directory: Path,
        lock_wait_seconds: float = 0.0,
        timeout: float = 60.0,
    ):
        """Open (or create) the index below ``base_directory``.

        Args:
            base_directory: Managed base directory
            lock_wait_seconds: How long ``lookup_or_reserve`` waits for a
                busy key before raising ``WorkspaceBusyError``
            timeout: SQLite busy timeout in seconds
        """
        self.base_directory = base_directory
        self.state_directory = base_directory / STATE_DIR_NAME
        self.lock_directory = self.state_directory / "locks"
        self.lock_wait_seconds = lock_wait_seconds

        self.lock_directory.mkdir(parents=True, exist_ok=True)
        self._cache = diskcache.Cache(
            directory=str(self.state_directory / "index"),
            timeout=timeout,
            # Records must only disappear through delete()
            eviction_policy="none",
        )
        self._held: dict[str, KeyLock] = {}
        self._held_lock = threading.Lock()

        logger.debug("Workspace index opened at %s", self.state_directory)

    def workspace_path(self, key: str) -> Path:
        return self.base_directory / key

    # Raw record access

    def get(self, key: str) -> WorkspaceRecord | None:
        value = self._cache.get(RECORD_PREFIX + key)
        if value is None:
            return None
        try:
            return WorkspaceRecord.from_cache_value(value)
        except ValueError as e:
            logger.warning("Dropping unreadable index entry %s: %s", key, e)
            self._cache.delete(RECORD_PREFIX + key)
            return None

    def put(self, record: WorkspaceRecord) -> None:
        self._cache.set(RECORD_PREFIX + record.key, record.to_cache_value())

    def delete(self, key: str) -> bool:
        deleted: bool = self._cache.delete(RECORD_PREFIX + key)
        return deleted

    def list_records(
        self, states: Iterable[WorkspaceState] | None = None
    ) -> list[WorkspaceRecord]:
        """Return all records, optionally filtered by state."""
        wanted = {WorkspaceState(s) for s in states} if states is not None else None
        records = []
        for cache_key in list(self._cache.iterkeys()):
            if not str(cache_key).startswith(RECORD_PREFIX):
                continue
            record = self.get(str(cache_key)[len(RECORD_PREFIX) :])
            if record is None:
                continue
            if wanted is None or WorkspaceState(record.state) in wanted:
                records.append(record)
        return records

    def find_by_path(self, path: Path) -> WorkspaceRecord | None:
        path = Path(path)
        record = self.get(path.name)
        if record is not None and Path(record.path) == path:
            return record
        return next((r for r in self.list_records() if Path(r.path) == path), None)

    def update(
        self,
        key: str,
        mutate: Callable[[WorkspaceRecord], WorkspaceRecord | None],
    ) -> WorkspaceRecord | None:
        """Atomically read, change and write one record.

        Args:
            key: Record key
            mutate: Returns the new record, or None to leave it unchanged

        Returns:
            The stored record after the update, None if it does not exist
        """
        with self._cache.transact():
            record = self.get(key)
            if record is None:
                return None
            updated = mutate(record)
            if updated is None:
                return record
            self.put(updated)
            return updated

    def set_fields(self, key: str, **changes: Any) -> WorkspaceRecord | None:
        """Update individual fields of a record."""
        return self.update(key, lambda r: r.model_copy(update=changes))

    def mark(self, key: str, state: WorkspaceState) -> WorkspaceRecord | None:
        return self.set_fields(key, state=WorkspaceState(state))

    # Key locks

    def is_reserved_here(self, key: str) -> bool:
        with self._held_lock:
            return key in self._held

    def try_key_lock(self, key: str, operation: str = "cleanup") -> KeyLock | None:
        """Take the key lock without waiting, None if anyone holds it."""
        if self.is_reserved_here(key):
            return None
        lock = KeyLock(self.lock_directory, key, {"operation": operation})
        return lock if lock.try_acquire() else None

    # Reservation lifecycle

    def lookup_or_reserve(
        self,
        key: str,
        repository_url: str,
        branch: str | None = None,
        validator: RecordValidator | None = None,
    ) -> tuple[WorkspaceRecord, bool]:
        """Reserve ``key`` for the calling process.

        An existing ``idle`` or ``preserved`` record that passes ``validator``
        is reused. An ``active`` record whose key lock could be taken belongs
        to a holder that died and is treated the same way. Anything else gets
        a fresh record.

        Returns:
            Tuple of (record in ``active`` state, whether it is new)

        Raises:
            WorkspaceBusyError: If another holder has the key
        """
        lock = KeyLock(self.lock_directory, key, {"operation": "reserve"})
        lock.acquire(self.lock_wait_seconds)
        try:
            record, is_new = self._reserve(key, repository_url, branch, validator)
            with self._held_lock:
                if key in self._held:
                    raise WorkspaceBusyError(key, f"pid={os.getpid()} (this process)")
                self._held[key] = lock
        except BaseException:
            lock.release()
            raise
        return record, is_new

    def _reserve(
        self,
        key: str,
        repository_url: str,
        branch: str | None,
        validator: RecordValidator | None,
    ) -> tuple[WorkspaceRecord, bool]:
        existing = self.get(key)
        reusable = (
            existing is not None and WorkspaceState(existing.state) in REUSABLE_STATES
        )
        if existing is not None and existing.state == WorkspaceState.ACTIVE:
            logger.warning(
                "Workspace %s was left active by pid %s, taking over",
                key,
                existing.owner_pid,
            )
        if reusable and validator is not None and existing is not None:
            reusable = validator(existing)
            if not reusable:
                logger.info("Workspace %s failed validation, reallocating", key)

        now = utc_now()
        if reusable and existing is not None:
            record = existing.model_copy(
                update={
                    "state": WorkspaceState.ACTIVE,
                    "last_accessed_at": now,
                    "owner_pid": os.getpid(),
                    "removal_requested": False,
                }
            )
        else:
            record = WorkspaceRecord(
                key=key,
                repository_url=repository_url,
                branch=branch,
                path=self.workspace_path(key),
                created_at=now,
                last_accessed_at=now,
                state=WorkspaceState.ACTIVE,
                owner_pid=os.getpid(),
            )
        with self._cache.transact():
            self.put(record)
        return record, not reusable

    def release(
        self,
        key: str,
        outcome: OperationOutcome,
        policy: "PreservationPolicy | None" = None,
        now: datetime | None = None,
        state: WorkspaceState | None = None,
    ) -> WorkspaceRecord | None:
        """Return a reservation to the pool.

        An explicit ``state`` such as ``corrupted`` wins. Otherwise the record
        becomes ``locked`` if an operation lock marker is still present,
        ``preserved`` if the policy preserves it (or an unexpired preservation
        is already attached), ``idle`` otherwise. The key lock
        is released in every case.
        """
        with self._held_lock:
            lock = self._held.pop(key, None)
        if lock is None:
            logger.warning("Release of workspace %s which is not reserved here", key)
            return None

        now = now or utc_now()
        try:
            return self.update(
                key,
                lambda record: self._released_record(
                    record, outcome, policy, now, state
                ),
            )
        finally:
            lock.release()

    def _released_record(
        self,
        record: WorkspaceRecord,
        outcome: OperationOutcome,
        policy: "PreservationPolicy | None",
        now: datetime,
        state: WorkspaceState | None = None,
    ) -> WorkspaceRecord:
        if state is not None:
            return record.model_copy(
                update={"state": state, "owner_pid": None, "preservation": None}
            )
        if has_operation_lock(Path(record.path)):
            return record.model_copy(
                update={
                    "state": WorkspaceState.LOCKED,
                    "owner_pid": None,
                    "preservation": None,
                }
            )

        entry = None
        if policy is not None and not outcome.success:
            entry = policy.evaluate(record, outcome, now)
        if entry is None and record.preservation is not None:
            if not record.preservation.is_expired(now):
                entry = record.preservation

        return record.model_copy(
            update={
                "state": WorkspaceState.PRESERVED if entry else WorkspaceState.IDLE,
                "owner_pid": None,
                "preservation": entry,
            }
        )

    # Eviction

    def select_eviction_candidates(
        self, max_count: int, max_total_bytes: int | None = None
    ) -> list[WorkspaceRecord]:
        """Pick the idle records to evict to get back under the limits.

        Pressure is measured over every non-preserved record; only ``idle``
        ones are candidates, oldest ``last_accessed_at`` first.
        """
        pool = [
            r for r in self.list_records() if r.state != WorkspaceState.PRESERVED
        ]
        count = len(pool)
        total = sum(r.size_bytes for r in pool)

        idle = sorted(
            (r for r in pool if r.state == WorkspaceState.IDLE), key=eviction_order
        )
        candidates: list[WorkspaceRecord] = []
        for record in idle:
            over_count = count > max_count
            over_size = max_total_bytes is not None and total > max_total_bytes
            if not (over_count or over_size):
                break
            candidates.append(record)
            count -= 1
            total -= record.size_bytes
        return candidates

    def close(self) -> None:
        with self._held_lock:
            held = list(self._held.values())
            self._held.clear()
        for lock in held:
            lock.release()
        self._cache.close()
