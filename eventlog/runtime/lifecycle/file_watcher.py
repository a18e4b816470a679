"""
file_watcher.py - Debounced watcher for store-file replacement.

Polls the identity (device, inode) of the store path. A producer that
deletes and recreates the store between runs produces a burst of
changes: missing, then a new inode. The watcher waits until the identity
has been stable for the debounce window (default 500ms) and then fires
once with the final state.

This is the fallback reconnect path for producers that replace the store
without notifying the lifecycle manager.

Usage:
    from eventlog.runtime.lifecycle.file_watcher import StoreFileWatcher

    def on_change(exists: bool) -> None:
        store.reopen() if exists else store.release()

    watcher = StoreFileWatcher(db_path, on_change)
    watcher.start()
    ...
    watcher.stop()
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

Identity = Optional[Tuple[int, int]]


def file_identity(path: Path) -> Identity:
    """(st_dev, st_ino) of ``path``, or None if it does not exist."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    return (st.st_dev, st.st_ino)


class StoreFileWatcher:
    """Fires ``on_change(exists)`` once per debounced replacement of a file.

    Attributes:
        path: Watched file.
        debounce: Seconds the identity must stay unchanged before firing.
        poll_interval: Seconds between identity checks.
    """

    def __init__(
        self,
        path: Path,
        on_change: Callable[[bool], None],
        debounce: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        from eventlog.config.runtime_config import get_lifecycle_config

        config = get_lifecycle_config()
        self.path = Path(path)
        self.on_change = on_change
        self.debounce = debounce if debounce is not None else config.watch_debounce
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.watch_poll_interval
        )
        self._lock = threading.Lock()
        self._baseline: Identity = file_identity(self.path)
        self._last_seen: Identity = self._baseline
        self._pending_since: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.fire_count = 0

    def rebaseline(self, path: Optional[Path] = None) -> None:
        """Accept the file's current identity as known (after an explicit reopen)."""
        with self._lock:
            if path is not None:
                self.path = Path(path)
            self._baseline = file_identity(self.path)
            self._last_seen = self._baseline
            self._pending_since = None

    def poll(self, now: Optional[float] = None) -> bool:
        """Check the file once. Returns True if the callback fired."""
        now = time.monotonic() if now is None else now
        with self._lock:
            current = file_identity(self.path)
            if current != self._last_seen:
                self._last_seen = current
                self._pending_since = now
                return False
            if self._pending_since is None or now - self._pending_since < self.debounce:
                return False
            self._pending_since = None
            if current == self._baseline:
                return False
            self._baseline = current
            self.fire_count += 1

        exists = current is not None
        logger.info("Store file %s %s", self.path, "replaced" if exists else "removed")
        try:
            self.on_change(exists)
        except Exception as e:
            logger.error("Store change handler failed for %s: %s", self.path, e)
        return True

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.poll()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="eventlog-store-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=max(1.0, self.poll_interval * 5))
        self._thread = None
