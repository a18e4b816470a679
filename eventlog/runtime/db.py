"""
db.py - SQLite-backed event store for backtest debug event logs.

This module provides the embedded store holding one run's event log:
- Run metadata (one row per simulation run)
- A flat, append-only event table with a JSON payload column
- Indexes for time-ordered scans, kind filters, parent links and the
  common payload entity keys

Design Philosophy:
    - One store file per run; the store is deleted and recreated between runs
    - The producer process writes, the query server reads concurrently;
      WAL journaling gives one writer and many readers across processes
    - Payloads stay schema-less JSON so new event kinds need no migration
    - Inserts are idempotent on event_id so a retried batch never duplicates

Usage:
    from eventlog.runtime.db import EventStore

    store = EventStore(db_path)
    store.create_run(run_id, start_time, end_time, config_hash)
    store.write_events(events)

    # Read side (query server opens without creating)
    reader = EventStore(db_path, create=False)
    runs = reader.list_runs()
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .types import (
    EventRecord,
    RunRecord,
    _to_store_ts,
    _utc_now,
    event_record_from_row,
)
from .types._time import TimestampLike

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DEFAULT_BUSY_TIMEOUT_MS = 5000


class StoreUnavailableError(RuntimeError):
    """The store is not open (released for reconnect, missing, or closed).

    Callers may retry once the store has been reopened.
    """

    retryable = True


# =============================================================================
# Schema
# =============================================================================

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    config_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,
    run_id TEXT NOT NULL,
    ts TEXT NOT NULL,
    kind TEXT NOT NULL,
    severity TEXT NOT NULL,
    category TEXT NOT NULL,
    payload TEXT NOT NULL CHECK (json_valid(payload)),
    parent_event_id TEXT,
    validation_errors TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_run_ts ON events(run_id, ts, seq);
CREATE INDEX IF NOT EXISTS idx_events_run_kind_ts ON events(run_id, kind, ts, seq);
CREATE INDEX IF NOT EXISTS idx_events_parent ON events(parent_event_id);
CREATE INDEX IF NOT EXISTS idx_events_order_id
    ON events(json_extract(payload, '$.order_id'));
CREATE INDEX IF NOT EXISTS idx_events_security_symbol
    ON events(json_extract(payload, '$.security_symbol'));
"""

EVENT_COLUMNS = (
    "seq, event_id, run_id, ts, kind, severity, category, "
    "payload, parent_event_id, validation_errors"
)


def connect_store(
    db_path: Path,
    create: bool = True,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    """Open a configured SQLite connection to a store file.

    Args:
        db_path: Store file path.
        create: If False, the file must already exist (opened read-write
            without creation, the way the query server attaches).
        busy_timeout_ms: How long to wait on a locked database.

    Raises:
        sqlite3.OperationalError: If the file cannot be opened.
    """
    timeout = busy_timeout_ms / 1000.0
    if create:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
    else:
        uri = db_path.resolve().as_uri() + "?mode=rw"
        conn = sqlite3.connect(uri, timeout=timeout, uri=True, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # Pragmas
    if create:
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
    return conn


# =============================================================================
# Event Store
# =============================================================================


class EventStore:
    """SQLite-backed event store for one run's debug event log.

    Thread-safe wrapper around a single sqlite3 connection: every read and
    write goes through one re-entrant lock, so the ingestion timer, explicit
    flushes and concurrent queries never share the connection unguarded.

    Attributes:
        db_path: Path to the store file (None for an in-memory store).
        connection: Active sqlite3 connection (lazy initialized).
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        create: bool = True,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ):
        """Initialize the event store.

        Args:
            db_path: Path to the store file. If None, uses an in-memory database.
            create: If False, attach to an existing file only and skip schema
                creation (the writer owns the schema).
            busy_timeout_ms: Lock wait applied to the connection.
        """
        self.db_path = Path(db_path) if db_path is not None else None
        self.create = create
        self.busy_timeout_ms = busy_timeout_ms
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._initialized = False

    @property
    def connection(self) -> sqlite3.Connection:
        """Get or create the sqlite3 connection."""
        if self._connection is None:
            with self._lock:
                if self._connection is None:
                    if self.db_path is not None:
                        self._connection = connect_store(
                            self.db_path, create=self.create, busy_timeout_ms=self.busy_timeout_ms
                        )
                    else:
                        self._connection = sqlite3.connect(":memory:", check_same_thread=False)
                        self._connection.row_factory = sqlite3.Row

                    if self.create and not self._initialized:
                        self._init_schema()
                        self._initialized = True

        return self._connection

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def _init_schema(self) -> None:
        """Initialize the database schema."""
        with self._lock:
            conn = self._connection
            conn.executescript(CREATE_TABLES_SQL)

            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, _to_store_ts(_utc_now())),
                )
            conn.commit()

            logger.debug("EventStore schema initialized (schema_version=%d)", SCHEMA_VERSION)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one transaction under the store lock."""
        with self._lock:
            conn = self.connection
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.warning("Database operation failed: %s", e)
                raise

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            with self._lock:
                if self._connection is not None:
                    self._connection.close()
                    self._connection = None
                    self._initialized = False

    # =========================================================================
    # Write Path
    # =========================================================================

    def create_run(
        self,
        run_id: str,
        start_time: TimestampLike,
        end_time: TimestampLike,
        config_hash: str,
    ) -> RunRecord:
        """Insert the run record. A second call for the same run_id is a no-op."""
        record = RunRecord(
            run_id=run_id,
            start_time=_to_store_ts(start_time),
            end_time=_to_store_ts(end_time),
            config_hash=config_hash,
            created_at=_to_store_ts(_utc_now()),
        )
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO runs (run_id, start_time, end_time, config_hash, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.run_id,
                    record.start_time,
                    record.end_time,
                    record.config_hash,
                    record.created_at,
                ),
            )
        return record

    @staticmethod
    def _event_params(event: EventRecord) -> tuple:
        issues = event.validation_errors
        return (
            event.event_id,
            event.run_id,
            _to_store_ts(event.timestamp),
            event.kind.value,
            event.severity.value,
            event.category.value,
            json.dumps(event.payload, separators=(",", ":"), allow_nan=False),
            event.parent_event_id,
            json.dumps([i.to_dict() for i in issues]) if issues else None,
        )

    def write_event(self, event: EventRecord) -> bool:
        """Insert one event. Returns True if inserted, False if already present."""
        return self.write_events([event]) == 1

    def write_events(self, events: Sequence[EventRecord]) -> int:
        """Insert a batch of events in one transaction.

        Either the whole batch commits or none of it does. Events whose
        event_id is already stored are skipped, so retrying a batch after a
        partial failure is safe. Any other constraint failure (a payload that
        is not valid JSON, a non-finite number) fails the whole batch.

        Returns:
            Number of events newly inserted.

        Raises:
            ValueError: If a payload holds NaN or Infinity.
        """
        if not events:
            return 0
        with self._transaction() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT INTO events
                    (event_id, run_id, ts, kind, severity, category,
                     payload, parent_event_id, validation_errors)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_id) DO NOTHING
                """,
                [self._event_params(e) for e in events],
            )
            inserted = conn.total_changes - before
        if inserted < len(events):
            logger.debug("Skipped %d already-stored event(s)", len(events) - inserted)
        return inserted

    # =========================================================================
    # Read Helpers
    # =========================================================================

    def fetch_rows(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchall()

    def fetch_events(self, sql: str, params: Sequence[Any] = ()) -> List[EventRecord]:
        """Run a SELECT returning EVENT_COLUMNS and decode each row."""
        return [event_record_from_row(row) for row in self.fetch_rows(sql, params)]

    def fetch_scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        with self._lock:
            row = self.connection.execute(sql, tuple(params)).fetchone()
        return row[0] if row is not None else None

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        rows = self.fetch_rows(
            """
            SELECT r.run_id, r.start_time, r.end_time, r.config_hash, r.created_at,
                   (SELECT COUNT(*) FROM events e WHERE e.run_id = r.run_id) AS event_count
            FROM runs r WHERE r.run_id = ?
            """,
            (run_id,),
        )
        return _run_from_row(rows[0]) if rows else None

    def list_runs(self) -> List[RunRecord]:
        """All runs in the store, newest first, with their event counts."""
        rows = self.fetch_rows(
            """
            SELECT r.run_id, r.start_time, r.end_time, r.config_hash, r.created_at,
                   (SELECT COUNT(*) FROM events e WHERE e.run_id = r.run_id) AS event_count
            FROM runs r
            ORDER BY r.created_at DESC, r.run_id
            """
        )
        return [_run_from_row(row) for row in rows]

    def get_event(self, event_id: str, run_id: Optional[str] = None) -> Optional[EventRecord]:
        sql = f"SELECT {EVENT_COLUMNS} FROM events WHERE event_id = ?"
        params: List[Any] = [event_id]
        if run_id is not None:
            sql += " AND run_id = ?"
            params.append(run_id)
        events = self.fetch_events(sql, params)
        return events[0] if events else None

    def event_count(self, run_id: Optional[str] = None) -> int:
        if run_id is None:
            return int(self.fetch_scalar("SELECT COUNT(*) FROM events"))
        return int(self.fetch_scalar("SELECT COUNT(*) FROM events WHERE run_id = ?", (run_id,)))

    def kind_counts(self, run_id: str) -> Dict[str, int]:
        rows = self.fetch_rows(
            "SELECT kind, COUNT(*) AS n FROM events WHERE run_id = ? GROUP BY kind ORDER BY kind",
            (run_id,),
        )
        return {row["kind"]: row["n"] for row in rows}


def _run_from_row(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        run_id=row["run_id"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        config_hash=row["config_hash"],
        created_at=row["created_at"],
        event_count=row["event_count"],
    )


# =============================================================================
# Global Instance (Singleton Pattern)
# =============================================================================

_global_store: Optional[EventStore] = None
_global_store_lock = threading.Lock()


def get_event_store(db_path: Optional[Path] = None) -> EventStore:
    """Get the global writer-side EventStore instance.

    Args:
        db_path: Path to the store file. If None, uses the configured path.

    Returns:
        The EventStore instance.
    """
    global _global_store

    with _global_store_lock:
        if _global_store is None:
            if db_path is None:
                from eventlog.config.runtime_config import get_busy_timeout_ms, get_store_path

                db_path = get_store_path()
                _global_store = EventStore(db_path, busy_timeout_ms=get_busy_timeout_ms())
            else:
                _global_store = EventStore(db_path)
        return _global_store


def close_event_store() -> None:
    """Close the global EventStore instance."""
    global _global_store

    with _global_store_lock:
        if _global_store is not None:
            _global_store.close()
            _global_store = None


# =============================================================================
# CLI Entry Point
# =============================================================================


def main():
    """CLI entry point for store inspection.

    Usage:
        python -m eventlog.runtime.db runs [--db-path PATH]
        python -m eventlog.runtime.db stats <run_id> [--db-path PATH]
    """
    import argparse
    import sys

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Event log store CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help="Path to the store file (default: EVENTLOG_DATABASE or debug/events.db)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("runs", help="List runs in the store")
    stats_parser = subparsers.add_parser("stats", help="Show event counts for a run")
    stats_parser.add_argument("run_id", help="Run ID to query")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.db_path is None:
        from eventlog.config.runtime_config import get_store_path

        args.db_path = get_store_path()
    if not args.db_path.exists():
        print(f"Store not found: {args.db_path}")
        sys.exit(1)

    store = EventStore(args.db_path, create=False)
    try:
        if args.command == "runs":
            runs = store.list_runs()
            if not runs:
                print("No runs recorded")
            for run in runs:
                print(f"{run.run_id}  {run.start_time} -> {run.end_time}  events={run.event_count}")
            sys.exit(0)

        run = store.get_run(args.run_id)
        if run is None:
            print(f"Run not found: {args.run_id}")
            sys.exit(1)
        print(f"Run: {run.run_id}")
        print(f"  Config hash: {run.config_hash}")
        print(f"  Events: {run.event_count}")
        for kind, count in store.kind_counts(run.run_id).items():
            print(f"    {kind}: {count}")
        sys.exit(0)
    finally:
        store.close()


if __name__ == "__main__":
    main()
