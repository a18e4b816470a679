"""
event_logger.py - Producer-facing contract for logging debug events.

The simulation engine calls two fire-and-forget methods:

    create_run(run_id, start_time, end_time, config_hash)
    write_event(event_id, run_id, timestamp, kind, severity, category,
                payload_json, parent_event_id=None, validation_errors_json=None)

Neither ever raises: malformed input and storage failures are logged and
the event (or run record) is dropped or retried by the ingestion pipeline.

start_run() wraps the per-run store recycling: release the query server's
connection, delete the previous store, create a fresh one, record the run
and let the server reattach.

Usage:
    from eventlog.runtime.event_logger import EventLogger

    with EventLogger(Path("debug/events.db")) as log:
        log.start_run(run_id, start, end, config_hash)
        log.write_event(event_id, run_id, ts, "TradeExecution", "info",
                        "execution", '{"order_id": "o-1", "price": 101.5}')
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from .cleanup import cleanup_store
from .db import EventStore
from .ingestion import IngestionPipeline
from .lifecycle.manager import LifecycleManager
from .types import (
    EventRecord,
    generate_event_id,
    parse_category,
    parse_event_kind,
    parse_severity,
    payload_to_dict,
)
from .types._time import TimestampLike, _to_store_ts
from .types.events import validation_issues_from_json

logger = logging.getLogger(__name__)


class EventLogger:
    """Fire-and-forget event logging for one producer process.

    Attributes:
        store_path: Store file for the current run.
        lifecycle: Optional manager coordinating the query server.
    """

    def __init__(
        self,
        store_path: Path,
        lifecycle: Optional[LifecycleManager] = None,
        batch_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
    ):
        self.store_path = Path(store_path)
        self.lifecycle = lifecycle
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._store: Optional[EventStore] = None
        self._pipeline: Optional[IngestionPipeline] = None

    @property
    def pipeline(self) -> Optional[IngestionPipeline]:
        return self._pipeline

    def _open(self) -> None:
        if self._store is None:
            self._store = EventStore(self.store_path)
            self._pipeline = IngestionPipeline(
                self._store,
                batch_size=self._batch_size,
                flush_interval=self._flush_interval,
            )

    def start_run(
        self,
        run_id: str,
        start_time: TimestampLike,
        end_time: TimestampLike,
        config_hash: str,
    ) -> bool:
        """Recycle the store for a new run and record the run.

        Returns:
            True if the run was recorded in a freshly created store.
        """
        self.close()
        fresh = True
        if self.lifecycle is not None and not self.lifecycle.prepare_for_cleanup():
            logger.warning("Query server did not release %s before cleanup", self.store_path)
        result = cleanup_store(self.store_path)
        if not result.success:
            fresh = False
            logger.warning(
                "Could not delete previous store %s after %d attempt(s): %s",
                self.store_path,
                result.attempts,
                result.error,
            )
        recorded = self.create_run(run_id, start_time, end_time, config_hash)
        if self.lifecycle is not None:
            self.lifecycle.notify_store_ready(self.store_path)
        return fresh and recorded

    def create_run(
        self,
        run_id: str,
        start_time: TimestampLike,
        end_time: TimestampLike,
        config_hash: str,
    ) -> bool:
        """Record run metadata. Returns False (and logs) on failure."""
        try:
            self._open()
            self._store.create_run(run_id, start_time, end_time, config_hash)
        except Exception as e:
            logger.error("Failed to create run %s: %s", run_id, e)
            return False
        return True

    def write_event(
        self,
        event_id: Optional[str],
        run_id: str,
        timestamp: TimestampLike,
        kind: Any,
        severity: Any,
        category: Any,
        payload_json: Any,
        parent_event_id: Optional[str] = None,
        validation_errors_json: Optional[str] = None,
    ) -> bool:
        """Queue one event for persistence.

        ``payload_json`` may be a JSON object string, a mapping or a payload
        dataclass. Decimal and datetime values in a mapping are converted.
        Returns False (and logs) if the event was malformed or its payload
        cannot be stored.
        """
        try:
            event = EventRecord(
                event_id=event_id or generate_event_id(),
                run_id=run_id,
                timestamp=_to_store_ts(timestamp),
                kind=parse_event_kind(kind),
                severity=parse_severity(severity),
                category=parse_category(category),
                payload=payload_to_dict(payload_json),
                parent_event_id=parent_event_id or None,
                validation_errors=validation_issues_from_json(validation_errors_json),
            )
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed event %s: %s", event_id, e)
            return False

        try:
            self._open()
        except Exception as e:
            logger.error("Event store %s unavailable: %s", self.store_path, e)
            return False
        return self._pipeline.write(event)

    def flush(self) -> int:
        if self._pipeline is None:
            return 0
        return self._pipeline.flush()

    def close(self) -> bool:
        """Flush remaining events and close the store.

        Returns:
            True if nothing buffered was lost.
        """
        ok = True
        if self._pipeline is not None:
            ok = self._pipeline.close()
            self._pipeline = None
        if self._store is not None:
            self._store.close()
            self._store = None
        return ok

    def __enter__(self) -> "EventLogger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
