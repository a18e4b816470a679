"""
instance_lock.py - Named, cross-process single-instance lock.

The lock is an exclusive, non-blocking ``flock`` on
``<runtime_dir>/<name>.lock``. The operating system drops it when the
holding process exits, whether it exits cleanly or crashes, so a stale
lock file never blocks a new server.

Usage:
    from eventlog.runtime.lifecycle.instance_lock import InstanceLock

    lock = InstanceLock("eventlog-query-server", runtime_dir)
    if not lock.acquire():
        sys.exit(1)  # another instance is running
    ...
    lock.release()
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# How long a starting server retries while is_held_elsewhere() briefly holds the lock
ACQUIRE_GRACE = 0.25
_RETRY_INTERVAL = 0.01


class InstanceLock:
    """Exclusive OS file lock identified by name.

    Attributes:
        name: Lock name, shared by every process that must be exclusive.
        runtime_dir: Directory holding the lock file.
    """

    def __init__(self, name: str, runtime_dir: Path):
        self.name = name
        self.runtime_dir = Path(runtime_dir)
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        return self.runtime_dir / f"{self.name}.lock"

    @property
    def held(self) -> bool:
        """True if this object currently holds the lock."""
        return self._fd is not None

    def _try_lock(self) -> Optional[int]:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            os.close(fd)
            return None
        return fd

    def acquire(self, timeout: float = 0.0) -> bool:
        """Take the lock, retrying for up to ``timeout`` seconds.

        is_held_elsewhere() holds the lock for an instant, so a caller
        racing that check needs a short timeout rather than a single attempt.

        Returns:
            True if acquired (or already held by this object), False if
            another holder kept it for the whole timeout.
        """
        if self._fd is not None:
            return True
        deadline = time.monotonic() + timeout
        fd = self._try_lock()
        while fd is None and time.monotonic() < deadline:
            time.sleep(_RETRY_INTERVAL)
            fd = self._try_lock()
        if fd is None:
            logger.debug("Instance lock %s is held by another process", self.path)
            return False
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        self._fd = fd
        logger.debug("Acquired instance lock %s", self.path)
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released instance lock %s", self.path)

    def is_held_elsewhere(self) -> bool:
        """Probe whether some other holder has the lock.

        The probe takes and immediately drops the lock when it is free, so
        it never keeps the lock.
        """
        if self._fd is not None:
            return False
        fd = self._try_lock()
        if fd is None:
            return True
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        return False

    def holder_pid(self) -> Optional[int]:
        """PID recorded by the current holder, if readable."""
        try:
            text = self.path.read_text().strip()
        except OSError:
            return None
        return int(text) if text.isdigit() else None

    def __enter__(self) -> "InstanceLock":
        if not self.acquire():
            raise RuntimeError(f"Instance lock {self.name} is held by another process")
        return self

    def __exit__(self, *exc) -> None:
        self.release()
