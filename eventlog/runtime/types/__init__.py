"""
types - Core type definitions for the event log runtime

This package provides the data types shared by the store, the ingestion
pipeline, the query engine and the RPC layer: the closed event enumerations,
kind-tagged payload variants, run and event records, derived state views and
query result containers.

Usage:
    from eventlog.runtime.types import (
        EventKind, Severity, Category, EntityType,
        EventRecord, RunRecord, ValidationIssue,
        TradeExecutionPayload, PositionUpdatePayload,
        StateSnapshot, StateDelta,
        EventPage, EventChain, SequencePage, AggregationResult,
        QueryValidationError,
        generate_event_id, generate_run_id,
    )
"""

from __future__ import annotations

from ._ids import EventId, RunId, generate_event_id, generate_run_id
from ._time import STORE_TS_FORMAT, _iso_to_datetime, _to_store_ts, _utc_now
from .events import (
    PAYLOAD_TYPES,
    Category,
    EntityType,
    EventKind,
    EventRecord,
    IndicatorCalculationPayload,
    MarketDataPayload,
    OrderRejectionPayload,
    PositionUpdatePayload,
    RiskEventPayload,
    RunRecord,
    Severity,
    StateChangePayload,
    TradeExecutionPayload,
    ValidationIssue,
    event_record_from_row,
    normalize_event_kind,
    parse_category,
    parse_entity_type,
    parse_event_kind,
    parse_severity,
    payload_from_dict,
    payload_to_dict,
)
from .queries import (
    AGGREGATION_FUNCTIONS,
    AggregationResult,
    EventChain,
    EventPage,
    QueryMetadata,
    QueryValidationError,
    SequencePage,
    page_metadata,
)
from .state import (
    ActiveOrder,
    FieldChange,
    IndicatorDelta,
    IndicatorState,
    PnLState,
    PositionDelta,
    PositionState,
    StateDelta,
    StateSnapshot,
)

__all__ = [
    "AGGREGATION_FUNCTIONS",
    "PAYLOAD_TYPES",
    "STORE_TS_FORMAT",
    "ActiveOrder",
    "AggregationResult",
    "Category",
    "EntityType",
    "EventChain",
    "EventId",
    "EventKind",
    "EventPage",
    "EventRecord",
    "FieldChange",
    "IndicatorCalculationPayload",
    "IndicatorDelta",
    "IndicatorState",
    "MarketDataPayload",
    "OrderRejectionPayload",
    "PnLState",
    "PositionDelta",
    "PositionState",
    "PositionUpdatePayload",
    "QueryMetadata",
    "QueryValidationError",
    "RiskEventPayload",
    "RunId",
    "RunRecord",
    "SequencePage",
    "Severity",
    "StateChangePayload",
    "StateDelta",
    "StateSnapshot",
    "TradeExecutionPayload",
    "ValidationIssue",
    "_iso_to_datetime",
    "_to_store_ts",
    "_utc_now",
    "event_record_from_row",
    "generate_event_id",
    "generate_run_id",
    "normalize_event_kind",
    "page_metadata",
    "parse_category",
    "parse_entity_type",
    "parse_event_kind",
    "parse_severity",
    "payload_from_dict",
    "payload_to_dict",
]
