"""
resilient_db.py - Reconnectable store handle for the query server.

This module provides a resilient layer over EventStore that:
1. Attaches to an existing store file without creating it
2. Detects store deletion or replacement (a fresh run) and drops the stale
   connection
3. Quiesces before swapping connections: in-flight queries drain, new
   queries fail fast with a retryable StoreUnavailableError
4. Tracks health for the server's health operation

Design Philosophy:
    - The producer owns the store file; the server only reads it
    - A released store is an expected state (between runs), not an error
    - Query validation errors pass through untouched; only storage errors
      are recorded against health

Usage:
    from eventlog.runtime.resilient_db import ResilientEventStore

    store = ResilientEventStore(db_path)
    store.open()
    page = store.run(lambda engine, state: engine.query_events(run_id))

    store.release()          # before the producer deletes the file
    store.reopen(new_path)   # once the new store exists
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from .db import DEFAULT_BUSY_TIMEOUT_MS, EventStore, StoreUnavailableError
from .lifecycle.file_watcher import file_identity
from .query_engine import QueryEngine
from .snapshot import StateReconstructor

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StoreHealthStatus:
    """Health status of the server's store connection."""

    healthy: bool
    store_path: Optional[str] = None
    store_exists: bool = False
    is_open: bool = False
    released: bool = False
    last_check: Optional[datetime] = None
    last_reconnect: Optional[datetime] = None
    reconnect_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "store_path": self.store_path,
            "store_exists": self.store_exists,
            "is_open": self.is_open,
            "released": self.released,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_reconnect": self.last_reconnect.isoformat() if self.last_reconnect else None,
            "reconnect_count": self.reconnect_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


class ResilientEventStore:
    """Reconnectable, read-side wrapper around EventStore.

    All query work runs through run(), which holds the query gate for the
    duration of the operation so release() can drain in-flight queries.
    """

    def __init__(self, db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._store: Optional[EventStore] = None
        self._engine: Optional[QueryEngine] = None
        self._state: Optional[StateReconstructor] = None
        self._identity: Optional[Tuple[int, int]] = None
        self._released = False
        self._gate = threading.RLock()
        self._health = StoreHealthStatus(healthy=False, store_path=str(self.db_path))

    @property
    def health(self) -> StoreHealthStatus:
        return self._health

    @property
    def is_open(self) -> bool:
        return self._store is not None

    @property
    def released(self) -> bool:
        return self._released

    def _record_error(self, message: str) -> None:
        self._health.error_count += 1
        self._health.last_error = message
        self._health.healthy = False

    def open(self) -> bool:
        """Attach to the store file if it exists.

        Returns:
            True if the store is open afterwards.
        """
        with self._gate:
            if self._store is not None:
                return True
            self._released = False
            self._health.released = False
            if not self.db_path.exists():
                logger.info("Store %s does not exist yet; waiting for producer", self.db_path)
                self._health.healthy = False
                self._health.store_exists = False
                return False
            store = EventStore(self.db_path, create=False, busy_timeout_ms=self.busy_timeout_ms)
            try:
                # Touch the schema so a corrupt or foreign file fails here
                store.fetch_scalar("SELECT COUNT(*) FROM runs")
            except sqlite3.DatabaseError as e:
                store.close()
                logger.warning("Cannot attach to store %s: %s", self.db_path, e)
                self._record_error(str(e))
                self._health.store_exists = True
                return False
            self._store = store
            self._engine = QueryEngine(store)
            self._state = StateReconstructor(store)
            self._identity = file_identity(self.db_path)
            self._health.healthy = True
            self._health.is_open = True
            self._health.store_exists = True
            self._health.last_error = None
            logger.info("Attached to store %s", self.db_path)
            return True

    def release(self) -> None:
        """Close the connection so the store file can be deleted.

        New queries fail fast from this point; queries already running
        complete before the connection closes.
        """
        self._released = True
        self._health.released = True
        with self._gate:
            if self._store is not None:
                self._store.close()
                logger.info("Released store %s", self.db_path)
            self._store = None
            self._engine = None
            self._state = None
            self._identity = None
            self._health.is_open = False
            self._health.healthy = False

    def reopen(self, db_path: Optional[Path] = None) -> bool:
        """Release, optionally switch path, and attach again."""
        with self._gate:
            self.release()
            if db_path is not None:
                self.db_path = Path(db_path)
                self._health.store_path = str(self.db_path)
            opened = self.open()
            self._health.reconnect_count += 1
            self._health.last_reconnect = datetime.now(timezone.utc)
            return opened

    def check_health(self) -> StoreHealthStatus:
        """Refresh health, releasing a connection whose file was deleted or replaced."""
        with self._gate:
            self._health.last_check = datetime.now(timezone.utc)
            identity = file_identity(self.db_path)
            self._health.store_exists = identity is not None
            if self._store is not None and identity != self._identity:
                logger.warning("Store %s was deleted or replaced; releasing", self.db_path)
                self.release()
                self._released = False
                self._health.released = False
            elif self._store is None and not self._released and identity is not None:
                self.open()
            return self._health

    def run(self, operation: Callable[[QueryEngine, StateReconstructor], T]) -> T:
        """Execute a query operation against the open store.

        Raises:
            StoreUnavailableError: If the store is released, missing or
                unreadable. Retryable once the store is reopened.
        """
        if self._released:
            raise StoreUnavailableError("Store is reconnecting; retry shortly")
        with self._gate:
            if self._released:
                raise StoreUnavailableError("Store is reconnecting; retry shortly")
            if self._store is None and not self.open():
                raise StoreUnavailableError(f"Store not available at {self.db_path}")
            try:
                return operation(self._engine, self._state)
            except sqlite3.DatabaseError as e:
                logger.warning("Store operation failed on %s: %s", self.db_path, e)
                self._record_error(str(e))
                raise StoreUnavailableError(f"Store error: {e}") from e

    def close(self) -> None:
        self.release()
