"""Tests for per-key file locks."""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from workspool.core.errors import WorkspaceBusyError
from workspool.workspace.key_lock import KeyLock, read_lock_holder


class TestKeyLock:
    """Test exclusive key locks."""

    @pytest.fixture
    def lock_dir(self, tmp_path: Path) -> Path:
        return tmp_path / "locks"

    def test_try_acquire_and_release(self, lock_dir: Path):
        """Test a released lock can be taken again."""
        first = KeyLock(lock_dir, "abc")
        second = KeyLock(lock_dir, "abc")

        assert first.try_acquire() is True
        assert first.is_held
        assert second.try_acquire() is False

        first.release()
        assert not first.is_held
        assert second.try_acquire() is True
        second.release()

    def test_different_keys_do_not_conflict(self, lock_dir: Path):
        """Test locks on different keys are independent."""
        with KeyLock(lock_dir, "one"), KeyLock(lock_dir, "two") as two:
            assert two.is_held

    def test_lock_file_is_kept(self, lock_dir: Path):
        """Test release never unlinks the lock file."""
        lock = KeyLock(lock_dir, "abc")
        lock.acquire()
        lock.release()
        assert (lock_dir / "abc.lock").exists()

    def test_release_is_idempotent(self, lock_dir: Path):
        """Test releasing twice is harmless."""
        lock = KeyLock(lock_dir, "abc")
        lock.acquire()
        lock.release()
        lock.release()

    def test_double_acquire_same_handle(self, lock_dir: Path):
        """Test the lock is not reentrant."""
        lock = KeyLock(lock_dir, "abc")
        lock.acquire()
        with pytest.raises(RuntimeError):
            lock.try_acquire()
        lock.release()

    def test_busy_error_names_holder(self, lock_dir: Path):
        """Test WorkspaceBusyError describes the current holder."""
        holder = KeyLock(lock_dir, "abc", {"operation": "reserve"})
        holder.acquire()
        try:
            with pytest.raises(WorkspaceBusyError) as exc_info:
                KeyLock(lock_dir, "abc").acquire(wait_seconds=0)
            assert f"pid={os.getpid()}" in str(exc_info.value)
            assert "operation=reserve" in str(exc_info.value)
            assert exc_info.value.key == "abc"
        finally:
            holder.release()

    def test_acquire_waits_for_release(self, lock_dir: Path):
        """Test acquire with a wait picks up a lock released meanwhile."""
        holder = KeyLock(lock_dir, "abc")
        holder.acquire()
        timer = threading.Timer(0.2, holder.release)
        timer.start()
        try:
            start = time.monotonic()
            waiter = KeyLock(lock_dir, "abc").acquire(wait_seconds=5)
            assert time.monotonic() - start >= 0.1
            waiter.release()
        finally:
            timer.join()

    def test_concurrent_try_acquire(self, lock_dir: Path):
        """Test exactly one of many simultaneous attempts wins."""
        workers = 8
        barrier = threading.Barrier(workers)

        def attempt() -> tuple[KeyLock, bool]:
            lock = KeyLock(lock_dir, "contended")
            barrier.wait()
            return lock, lock.try_acquire()

        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(lambda _i: attempt(), range(workers)))

        try:
            assert sum(1 for _lock, ok in results if ok) == 1
        finally:
            for lock, _ok in results:
                lock.release()


class TestReadLockHolder:
    """Test holder descriptions."""

    def test_missing_file(self, tmp_path: Path):
        """Test a missing lock file."""
        assert read_lock_holder(tmp_path / "missing.lock") == "<unavailable>"

    def test_released_lock(self, tmp_path: Path):
        """Test a released lock has no holder."""
        lock = KeyLock(tmp_path, "abc")
        lock.acquire()
        lock.release()
        assert read_lock_holder(tmp_path / "abc.lock") == "unknown holder"

    def test_garbage_content(self, tmp_path: Path):
        """Test non JSON content is returned truncated."""
        path = tmp_path / "abc.lock"
        path.write_text("x" * 500)
        assert read_lock_holder(path) == "x" * 120
