"""
ingestion.py - Batched ingestion of debug events into the event store.

The pipeline buffers events written by the producer and flushes them to
the EventStore in batches, whichever comes first:
- the buffer reaches batch_size events (default 1000)
- the periodic timer fires (default every 30 seconds)

Design Philosophy:
    - Producer observability must never crash the run it instruments:
      write() and flush() log failures and never raise
    - A failed batch stays at the front of the buffer and is retried as a
      unit on the next flush (inserts are idempotent on event_id)
    - One lock guards the buffer and serializes timer and explicit flushes
    - close() performs a final synchronous flush before returning

Usage:
    from eventlog.runtime.ingestion import IngestionPipeline

    pipeline = IngestionPipeline(store)
    pipeline.write(event)
    ...
    pipeline.close()  # final flush, stops the timer
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from .db import EventStore
from .event_validator import apply_validation
from .types import EventRecord

logger = logging.getLogger(__name__)


@dataclass
class IngestionStats:
    """Counters describing pipeline activity."""

    events_written: int = 0
    events_flushed: int = 0
    flush_count: int = 0
    failed_flushes: int = 0
    events_dropped: int = 0
    last_error: Optional[str] = None


class IngestionPipeline:
    """Buffers events and flushes them to an EventStore in batches.

    Attributes:
        store: Destination store.
        batch_size: Buffer size that triggers an immediate flush.
        flush_interval: Seconds between timer-driven flushes.
    """

    def __init__(
        self,
        store: EventStore,
        batch_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
        close_flush_attempts: Optional[int] = None,
        start_timer: bool = True,
    ):
        """Initialize the pipeline.

        Args:
            store: Destination store.
            batch_size: Events per batch. Defaults to the configured value.
            flush_interval: Timer period in seconds. Defaults to the configured value.
            close_flush_attempts: Final-flush attempts made by close().
            start_timer: If False, only size-triggered and explicit flushes run.
        """
        from eventlog.config.runtime_config import get_ingestion_config

        config = get_ingestion_config()
        self.store = store
        self.batch_size = max(1, batch_size if batch_size is not None else config.batch_size)
        self.flush_interval = (
            flush_interval if flush_interval is not None else config.flush_interval
        )
        self.close_flush_attempts = max(
            1,
            close_flush_attempts if close_flush_attempts is not None else config.close_flush_attempts,
        )
        self.stats = IngestionStats()

        self._buffer: Deque[EventRecord] = deque()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = False
        self._timer: Optional[threading.Thread] = None
        if start_timer:
            self._timer = threading.Thread(
                target=self._timer_loop, name="eventlog-flush-timer", daemon=True
            )
            self._timer.start()

    @property
    def pending(self) -> int:
        """Number of events buffered but not yet persisted."""
        with self._lock:
            return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, event: EventRecord) -> bool:
        """Buffer an event, flushing if the batch size is reached.

        Never raises. Events written after close() and events whose payload
        has no JSON form are dropped with a warning.

        Returns:
            True if the event was buffered.
        """
        with self._lock:
            if self._closed:
                self.stats.events_dropped += 1
                logger.warning("Dropping event %s: pipeline is closed", event.event_id)
                return False
            try:
                event = apply_validation(event)
            except (TypeError, ValueError) as e:
                self.stats.events_dropped += 1
                logger.warning(
                    "Dropping event %s: payload is not serializable: %s", event.event_id, e
                )
                return False
            self._buffer.append(event)
            self.stats.events_written += 1
            if len(self._buffer) >= self.batch_size:
                self._flush_locked()
            return True

    def flush(self) -> int:
        """Persist all buffered events.

        Returns:
            Number of events persisted by this call (0 on failure).
        """
        with self._lock:
            return self._flush_locked()

    def _flush_locked(self) -> int:
        flushed = 0
        while self._buffer:
            batch: List[EventRecord] = [
                self._buffer[i] for i in range(min(self.batch_size, len(self._buffer)))
            ]
            try:
                self.store.write_events(batch)
            except Exception as e:
                # Batch stays at the front of the buffer for the next flush
                self.stats.failed_flushes += 1
                self.stats.last_error = str(e)
                logger.warning(
                    "Flush of %d event(s) failed, will retry (%d buffered): %s",
                    len(batch),
                    len(self._buffer),
                    e,
                )
                break
            for _ in batch:
                self._buffer.popleft()
            flushed += len(batch)
            self.stats.events_flushed += len(batch)
            self.stats.flush_count += 1
        if flushed:
            logger.debug("Flushed %d event(s) to %s", flushed, self.store.db_path)
        return flushed

    def _timer_loop(self) -> None:
        while not self._stop.wait(self.flush_interval):
            self.flush()

    def close(self) -> bool:
        """Stop the timer and perform the final flush.

        Returns:
            True if every buffered event was persisted.
        """
        self._stop.set()
        if self._timer is not None and self._timer is not threading.current_thread():
            self._timer.join(timeout=max(1.0, self.flush_interval))

        with self._lock:
            self._closed = True
            for attempt in range(1, self.close_flush_attempts + 1):
                self._flush_locked()
                if not self._buffer:
                    return True
                logger.warning(
                    "Final flush attempt %d/%d left %d event(s) buffered",
                    attempt,
                    self.close_flush_attempts,
                    len(self._buffer),
                )
            lost = len(self._buffer)
            self.stats.events_dropped += lost
            self._buffer.clear()
            logger.error("Lost %d event(s) at close: %s", lost, self.stats.last_error)
            return False

    def __enter__(self) -> "IngestionPipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
