"""Event types for the debug event log.

This module contains the closed enumerations (kind, severity, category,
entity type), the kind-tagged payload variants used at the API boundary,
and the persisted run and event records.

Payloads are stored as schema-less JSON. The payload dataclasses give
callers a typed view of the well-known fields of each kind; unknown keys
are carried through in ``extra`` so nothing is lost on a round trip.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Type

from ._time import _to_store_ts


class EventKind(str, Enum):
    """Closed set of event kinds a producer may log."""

    TRADE_EXECUTION = "trade_execution"
    ORDER_REJECTION = "order_rejection"
    INDICATOR_CALCULATION = "indicator_calculation"
    POSITION_UPDATE = "position_update"
    STATE_CHANGE = "state_change"
    MARKET_DATA = "market_data"
    RISK_EVENT = "risk_event"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"


class Category(str, Enum):
    EXECUTION = "execution"
    MARKET_DATA = "market_data"
    INDICATORS = "indicators"
    RISK = "risk"
    PERFORMANCE = "performance"


class EntityType(str, Enum):
    """Payload keys that identify an entity for entity-reference queries."""

    ORDER_ID = "order_id"
    SECURITY_SYMBOL = "security_symbol"
    POSITION_ID = "position_id"
    INDICATOR_NAME = "indicator_name"


# =============================================================================
# Name Canonicalization
# =============================================================================
# Producers written against the PascalCase naming (TradeExecution, MarketData,
# OrderId) are accepted; everything is stored under the snake_case names.

EVENT_KIND_ALIASES: Dict[str, str] = {
    "TradeExecution": "trade_execution",
    "OrderRejection": "order_rejection",
    "IndicatorCalculation": "indicator_calculation",
    "PositionUpdate": "position_update",
    "StateChange": "state_change",
    "MarketData": "market_data",
    "MarketDataEvent": "market_data",
    "market_data_event": "market_data",
    "RiskEvent": "risk_event",
}

CATEGORY_ALIASES: Dict[str, str] = {
    "Execution": "execution",
    "MarketData": "market_data",
    "market-data": "market_data",
    "Indicators": "indicators",
    "Risk": "risk",
    "Performance": "performance",
}

ENTITY_TYPE_ALIASES: Dict[str, str] = {
    "OrderId": "order_id",
    "SecuritySymbol": "security_symbol",
    "PositionId": "position_id",
    "IndicatorName": "indicator_name",
}


def normalize_event_kind(kind: str) -> str:
    """Normalize an event kind to its canonical form.

    Args:
        kind: The event kind string (may be a PascalCase alias).

    Returns:
        The canonical event kind.
    """
    return EVENT_KIND_ALIASES.get(kind, kind)


def _parse_enum(enum_cls: Type[Enum], value: Any, aliases: Mapping[str, str], label: str):
    if isinstance(value, enum_cls):
        return value
    raw = str(value).strip()
    canonical = aliases.get(raw, raw)
    try:
        return enum_cls(canonical)
    except ValueError:
        try:
            return enum_cls(canonical.lower())
        except ValueError:
            valid = ", ".join(member.value for member in enum_cls)
            raise ValueError(f"Unknown {label} '{value}'. Valid values: {valid}") from None


def parse_event_kind(value: Any) -> EventKind:
    """Parse an event kind, accepting aliases.

    Raises:
        ValueError: If the kind is not part of the closed enumeration.
    """
    return _parse_enum(EventKind, value, EVENT_KIND_ALIASES, "event kind")


def parse_severity(value: Any) -> Severity:
    return _parse_enum(Severity, value, {}, "severity")


def parse_category(value: Any) -> Category:
    return _parse_enum(Category, value, CATEGORY_ALIASES, "category")


def parse_entity_type(value: Any) -> EntityType:
    return _parse_enum(EntityType, value, ENTITY_TYPE_ALIASES, "entity type")


# =============================================================================
# Kind-Tagged Payloads
# =============================================================================


@dataclass
class _PayloadBase:
    """Shared serialization for payload variants."""

    kind: ClassVar[EventKind]
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is not None:
                result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        known = {f.name for f in fields(cls) if f.name != "extra"}
        kwargs = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(extra=extra, **kwargs)


@dataclass
class TradeExecutionPayload(_PayloadBase):
    kind: ClassVar[EventKind] = EventKind.TRADE_EXECUTION
    order_id: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    direction: Optional[str] = None
    commission: Optional[float] = None
    slippage: Optional[float] = None
    remaining_quantity: Optional[float] = None
    security_symbol: Optional[str] = None


@dataclass
class OrderRejectionPayload(_PayloadBase):
    kind: ClassVar[EventKind] = EventKind.ORDER_REJECTION
    order_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    security_symbol: Optional[str] = None


@dataclass
class IndicatorCalculationPayload(_PayloadBase):
    kind: ClassVar[EventKind] = EventKind.INDICATOR_CALCULATION
    indicator_name: Optional[str] = None
    value: Optional[float] = None
    security_symbol: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None


@dataclass
class PositionUpdatePayload(_PayloadBase):
    kind: ClassVar[EventKind] = EventKind.POSITION_UPDATE
    security_symbol: Optional[str] = None
    quantity: Optional[float] = None
    average_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    position_id: Optional[str] = None


@dataclass
class StateChangePayload(_PayloadBase):
    kind: ClassVar[EventKind] = EventKind.STATE_CHANGE
    state_type: Optional[str] = None
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    security_symbol: Optional[str] = None
    realized_pnl: Optional[float] = None
    unrealized_pnl: Optional[float] = None


@dataclass
class MarketDataPayload(_PayloadBase):
    kind: ClassVar[EventKind] = EventKind.MARKET_DATA
    security_symbol: Optional[str] = None
    price: Optional[float] = None
    volume: Optional[float] = None


@dataclass
class RiskEventPayload(_PayloadBase):
    kind: ClassVar[EventKind] = EventKind.RISK_EVENT
    risk_type: Optional[str] = None
    message: Optional[str] = None
    security_symbol: Optional[str] = None


PAYLOAD_TYPES: Dict[EventKind, Type[_PayloadBase]] = {
    cls.kind: cls
    for cls in (
        TradeExecutionPayload,
        OrderRejectionPayload,
        IndicatorCalculationPayload,
        PositionUpdatePayload,
        StateChangePayload,
        MarketDataPayload,
        RiskEventPayload,
    )
}


def payload_from_dict(kind: Any, data: Mapping[str, Any]) -> _PayloadBase:
    """Build the payload variant for ``kind`` from a raw JSON object."""
    return PAYLOAD_TYPES[parse_event_kind(kind)].from_dict(data)


def _json_value(value: Any) -> Any:
    """Convert producer-side values into their JSON equivalents.

    Decimals become floats, datetimes become store timestamps and dates
    ISO dates. Anything else unknown is left for json.dumps to reject.
    """
    if isinstance(value, Mapping):
        return {k: _json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return _to_store_ts(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def payload_to_dict(payload: Any) -> Dict[str, Any]:
    """Accept a payload variant, a mapping or a JSON string; return a dict.

    Non-finite floats pass through; apply_validation replaces them.
    """
    if isinstance(payload, _PayloadBase):
        return _json_value(payload.to_dict())
    if payload is None:
        return {}
    if isinstance(payload, (str, bytes)):
        decoded = json.loads(payload) if payload else {}
        if not isinstance(decoded, dict):
            raise ValueError("Event payload must be a JSON object")
        return decoded
    return _json_value(dict(payload))


# =============================================================================
# Persisted Records
# =============================================================================


@dataclass
class ValidationIssue:
    """A problem found in an event at write time.

    Attributes:
        field: The payload field (or event attribute) at fault.
        message: Human-readable description.
        severity: "error" or "warning".
    """

    field: str
    message: str
    severity: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "message": self.message, "severity": self.severity}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidationIssue":
        return cls(
            field=str(data.get("field", "")),
            message=str(data.get("message", "")),
            severity=str(data.get("severity", "error")).lower(),
        )


@dataclass
class RunRecord:
    """One simulation run stored in the event log.

    Attributes:
        run_id: Opaque unique run identifier.
        start_time: Simulated start time (store timestamp text).
        end_time: Simulated end time (store timestamp text).
        config_hash: Content hash of the run configuration.
        created_at: Wall-clock creation time of the record.
        event_count: Number of events stored for the run (query results only).
    """

    run_id: str
    start_time: str
    end_time: str
    config_hash: str
    created_at: Optional[str] = None
    event_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "config_hash": self.config_hash,
            "created_at": self.created_at,
            "event_count": self.event_count,
        }


@dataclass
class EventRecord:
    """One logged occurrence within a run.

    Attributes:
        event_id: Externally visible unique identifier.
        run_id: Owning run.
        timestamp: Store timestamp text (UTC, microseconds, Z suffix).
        kind: Event kind.
        severity: Severity level.
        category: Event category.
        payload: Raw JSON payload.
        parent_event_id: Causal parent within the same run, if any.
        validation_errors: Issues attached at write time.
        seq: Store-assigned sequence id (None before persistence).
    """

    event_id: str
    run_id: str
    timestamp: str
    kind: EventKind
    severity: Severity
    category: Category
    payload: Dict[str, Any] = field(default_factory=dict)
    parent_event_id: Optional[str] = None
    validation_errors: List[ValidationIssue] = field(default_factory=list)
    seq: Optional[int] = None

    def typed_payload(self) -> _PayloadBase:
        """Return the kind-tagged payload variant for this event."""
        return payload_from_dict(self.kind, self.payload)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "event_id": self.event_id,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "category": self.category.value,
            "payload": self.payload,
            "parent_event_id": self.parent_event_id,
        }
        if self.validation_errors:
            result["validation_errors"] = [e.to_dict() for e in self.validation_errors]
        if self.seq is not None:
            result["seq"] = self.seq
        return result


def validation_issues_from_json(raw: Optional[str]) -> List[ValidationIssue]:
    """Decode the stored validation-issue column (tolerates legacy shapes)."""
    if not raw:
        return []
    decoded = json.loads(raw)
    if isinstance(decoded, dict):
        decoded = [decoded]
    issues = []
    for item in decoded or []:
        if isinstance(item, Mapping):
            issues.append(ValidationIssue.from_dict(item))
        else:
            issues.append(ValidationIssue(field="", message=str(item)))
    return issues


def event_record_from_row(row: Mapping[str, Any]) -> EventRecord:
    """Build an EventRecord from a store row (sqlite3.Row or dict)."""
    return EventRecord(
        seq=row["seq"],
        event_id=row["event_id"],
        run_id=row["run_id"],
        timestamp=row["ts"],
        kind=parse_event_kind(row["kind"]),
        severity=parse_severity(row["severity"]),
        category=parse_category(row["category"]),
        payload=json.loads(row["payload"]) if row["payload"] else {},
        parent_event_id=row["parent_event_id"],
        validation_errors=validation_issues_from_json(row["validation_errors"]),
    )
