# eventlog/runtime package
# Event store, ingestion and query engine for backtest debug event logs.
#
# Core components:
#   - types: Core dataclasses (EventRecord, RunRecord, StateSnapshot, ...)
#   - db: SQLite event store (one store file per run)
#   - ingestion: batched, timer-flushed write pipeline
#   - event_logger: fire-and-forget producer contract
#   - query_engine / snapshot: read operations
#   - resilient_db: reconnectable store handle for the query server
#   - cleanup: store + journal file deletion with retries
#   - lifecycle: single-instance query-server management
#
# Usage:
#     from eventlog.runtime import EventLogger
#     with EventLogger(store_path) as log:
#         log.start_run(run_id, start, end, config_hash)
#         log.write_event(...)

from .cleanup import CleanupResult, cleanup_store
from .db import EventStore, StoreUnavailableError
from .event_logger import EventLogger
from .ingestion import IngestionPipeline
from .query_engine import QueryEngine
from .snapshot import StateReconstructor
from .types import (
    Category,
    EntityType,
    EventKind,
    EventRecord,
    QueryValidationError,
    RunRecord,
    Severity,
    generate_event_id,
    generate_run_id,
)

__all__ = [
    "Category",
    "CleanupResult",
    "EntityType",
    "EventKind",
    "EventLogger",
    "EventRecord",
    "EventStore",
    "IngestionPipeline",
    "QueryEngine",
    "QueryValidationError",
    "RunRecord",
    "Severity",
    "StateReconstructor",
    "StoreUnavailableError",
    "cleanup_store",
    "generate_event_id",
    "generate_run_id",
]
