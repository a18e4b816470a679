"""
cleanup.py - Deletion of a store file and its journal companions.

A store on disk is three files: the database itself plus the write-ahead
log (``<path>-wal``) and shared-memory index (``<path>-shm``). Cleanup
removes all three or none of them:

1. Every existing file is renamed aside; if any rename fails the renames
   already made are undone and the attempt is retried.
2. The renamed files are then deleted. They are no longer at the store
   path, so a later open or write never sees a partial store.

Attempts are retried with a linearly growing delay because a recently
closed connection (ours or the query server's) may briefly hold an OS
file lock. Failure is reported as a CleanupResult, never raised.

Usage:
    from eventlog.runtime.cleanup import cleanup_store

    result = cleanup_store(Path("debug/events.db"))
    if not result.success:
        logger.warning("Stale store kept: %s", result.error)
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

STORE_SUFFIXES = ("", "-wal", "-shm")


@dataclass
class CleanupResult:
    """Outcome of a store cleanup.

    Attributes:
        success: True when no store file remains at the path.
        files_deleted: Paths that were removed.
        attempts: Attempts made (0 when there was nothing to delete).
        elapsed_ms: Wall time spent, including retry delays.
        error: Last error message when success is False.
    """

    success: bool
    files_deleted: List[str] = field(default_factory=list)
    attempts: int = 0
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "files_deleted": list(self.files_deleted),
            "attempts": self.attempts,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "error": self.error,
        }


def store_files(db_path: Path) -> List[Path]:
    """The main, WAL and SHM paths for a store, in that order."""
    return [Path(str(db_path) + suffix) for suffix in STORE_SUFFIXES]


def _remove_all(paths: List[Path]) -> List[str]:
    tag = f".deleting-{os.getpid()}-{uuid.uuid4().hex[:8]}"
    moved: List[Tuple[Path, Path]] = []
    try:
        for path in paths:
            if path.exists():
                target = path.with_name(path.name + tag)
                os.replace(path, target)
                moved.append((path, target))
    except OSError:
        for original, target in reversed(moved):
            try:
                os.replace(target, original)
            except OSError as restore_error:
                logger.error("Could not restore %s after failed cleanup: %s", original, restore_error)
        raise

    for original, target in moved:
        try:
            target.unlink()
        except OSError as e:
            logger.warning("Renamed-aside store file %s not removed: %s", target, e)
    return [str(original) for original, _ in moved]


def cleanup_store(
    db_path: Path,
    max_retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
) -> CleanupResult:
    """Delete a store and its journal files, retrying on lock contention.

    Args:
        db_path: Main store file path.
        max_retries: Attempts before giving up (default from config: 5).
        retry_delay: Base delay in seconds; attempt n waits n * retry_delay
            (default from config: 0.2).

    Returns:
        CleanupResult describing what happened.
    """
    from eventlog.config.runtime_config import get_cleanup_config

    config = get_cleanup_config()
    attempts_allowed = max(1, max_retries if max_retries is not None else config.max_retries)
    delay = retry_delay if retry_delay is not None else config.retry_delay

    started = time.monotonic()
    paths = store_files(Path(db_path))
    if not any(p.exists() for p in paths):
        return CleanupResult(success=True, elapsed_ms=(time.monotonic() - started) * 1000.0)

    last_error: Optional[str] = None
    for attempt in range(1, attempts_allowed + 1):
        try:
            deleted = _remove_all(paths)
        except OSError as e:
            last_error = str(e)
            logger.warning(
                "Store cleanup attempt %d/%d for %s failed: %s",
                attempt,
                attempts_allowed,
                db_path,
                e,
            )
            if attempt < attempts_allowed:
                time.sleep(delay * attempt)
            continue
        elapsed = (time.monotonic() - started) * 1000.0
        logger.info("Deleted store %s (%d file(s)) in %.1fms", db_path, len(deleted), elapsed)
        return CleanupResult(
            success=True, files_deleted=deleted, attempts=attempt, elapsed_ms=elapsed
        )

    return CleanupResult(
        success=False,
        attempts=attempts_allowed,
        elapsed_ms=(time.monotonic() - started) * 1000.0,
        error=last_error,
    )
