"""Cross-process mutual exclusion per workspace key.

Each key maps to a lock file holding an ``fcntl.flock`` exclusive lock for
as long as the reservation lasts. The kernel drops the lock when the holder
process dies, so a crashed holder never blocks the key forever. Lock files
are never unlinked: removing a file another process is waiting on would let
two holders lock different inodes.
"""

import fcntl
import json
import logging
import os
import socket
import time
from pathlib import Path
from typing import IO, Any

from workspool.core.errors import WorkspaceBusyError


logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.05
LOCK_LOG_PERIOD = 2.0


def read_lock_holder(lock_path: Path) -> str:
    """Best-effort description of who holds ``lock_path``."""
    try:
        data = lock_path.read_text().strip()
    except OSError:
        return "<unavailable>"
    if not data:
        return "unknown holder"
    try:
        holder = json.loads(data)
    except json.JSONDecodeError:
        return data[:120]
    return (
        f"pid={holder.get('pid')} host={holder.get('hostname')} "
        f"since={holder.get('ts')} operation={holder.get('operation')}"
    )


class KeyLock:
    """Exclusive, non-reentrant lock on one workspace key."""

    def __init__(
        self, lock_dir: Path, key: str, metadata: dict[str, Any] | None = None
    ):
        self.key = key
        self.path = lock_dir / f"{key}.lock"
        self.metadata = metadata or {}
        self._fh: IO[str] | None = None

    @property
    def is_held(self) -> bool:
        return self._fh is not None

    def try_acquire(self) -> bool:
        """Try to take the lock without waiting.

        Returns:
            True if the lock was acquired
        """
        if self._fh is not None:
            raise RuntimeError(f"Key lock {self.key} is already held by this handle")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = self.path.open("a+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            return False
        except OSError:
            fh.close()
            raise
        self._fh = fh
        self._write_metadata()
        return True

    def acquire(self, wait_seconds: float = 0.0) -> "KeyLock":
        """Take the lock, waiting up to ``wait_seconds``.

        Raises:
            WorkspaceBusyError: If another holder keeps the lock
        """
        start = time.monotonic()
        last_log = start
        while not self.try_acquire():
            waited = time.monotonic() - start
            if waited >= wait_seconds:
                raise WorkspaceBusyError(self.key, read_lock_holder(self.path))
            now = time.monotonic()
            if now - last_log >= LOCK_LOG_PERIOD:
                logger.info(
                    "Waiting for workspace %s held by %s (%.1fs)",
                    self.key,
                    read_lock_holder(self.path),
                    waited,
                )
                last_log = now
            time.sleep(min(LOCK_POLL_INTERVAL, max(wait_seconds - waited, 0.0)))
        return self

    def _write_metadata(self) -> None:
        assert self._fh is not None
        payload = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            **self.metadata,
        }
        try:
            self._fh.seek(0)
            self._fh.truncate(0)
            self._fh.write(json.dumps(payload))
            self._fh.flush()
        except OSError as e:
            logger.debug("Failed to write lock metadata for %s: %s", self.path, e)

    def release(self) -> None:
        """Release the lock. Releasing an unheld lock is a no-op."""
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            fh.seek(0)
            fh.truncate(0)
        except OSError:
            logger.debug("Failed to clear lock metadata for %s", self.path)
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()

    def __enter__(self) -> "KeyLock":
        return self.acquire()

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.release()
