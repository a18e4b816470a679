"""
event_validator.py - Write-time validation of logged events

Checks each event against the per-kind payload contract:
- Required payload fields present for the event kind
- Numeric fields actually numeric
- Payload size within the store limit
- No self-referencing parent (a one-event causal cycle)

Validation never rejects an event: problems are returned as
ValidationIssue entries and stored alongside the event so a later
get_validation_errors query can surface them.

Usage:
    from eventlog.runtime.event_validator import validate_event

    issues = validate_event(event)
    for issue in issues:
        print(f"[{issue.severity}] {issue.field}: {issue.message}")
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Tuple

from .types import EventKind, EventRecord, ValidationIssue

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1024 * 1024

# kind -> [(field, severity)]
REQUIRED_FIELDS: Dict[EventKind, List[Tuple[str, str]]] = {
    EventKind.TRADE_EXECUTION: [
        ("order_id", "error"),
        ("price", "error"),
        ("quantity", "warning"),
    ],
    EventKind.ORDER_REJECTION: [
        ("order_id", "error"),
        ("rejection_reason", "error"),
    ],
    EventKind.INDICATOR_CALCULATION: [
        ("indicator_name", "error"),
        ("value", "error"),
    ],
    EventKind.POSITION_UPDATE: [("security_symbol", "error")],
    EventKind.RISK_EVENT: [("risk_type", "error")],
}

NUMERIC_FIELDS = frozenset(
    {
        "price",
        "quantity",
        "value",
        "average_price",
        "realized_pnl",
        "unrealized_pnl",
        "remaining_quantity",
        "commission",
        "slippage",
        "volume",
    }
)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_event(event: EventRecord) -> List[ValidationIssue]:
    """Validate one event against its kind's payload contract.

    Args:
        event: The event to check (payload already decoded).

    Returns:
        Issues found, in field order. Empty when the event is clean.
    """
    issues: List[ValidationIssue] = []
    payload = event.payload or {}

    for field_name, severity in REQUIRED_FIELDS.get(event.kind, []):
        value = payload.get(field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            issues.append(
                ValidationIssue(
                    field=field_name,
                    message=f"{event.kind.value} event is missing required field '{field_name}'",
                    severity=severity,
                )
            )

    for field_name in sorted(NUMERIC_FIELDS & set(payload)):
        value = payload[field_name]
        if value is not None and not _is_number(value):
            issues.append(
                ValidationIssue(
                    field=field_name,
                    message=f"Field '{field_name}' must be numeric, got {type(value).__name__}",
                    severity="error",
                )
            )

    size = len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        issues.append(
            ValidationIssue(
                field="payload",
                message=f"Payload is {size} bytes, exceeding the {MAX_PAYLOAD_BYTES} byte limit",
                severity="error",
            )
        )

    if event.parent_event_id is not None and event.parent_event_id == event.event_id:
        issues.append(
            ValidationIssue(
                field="parent_event_id",
                message="Event references itself as parent; parent reference dropped",
                severity="error",
            )
        )

    return issues


def _replace_non_finite(value: Any, path: str, found: List[str]) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        found.append(path)
        return None
    if isinstance(value, dict):
        return {
            k: _replace_non_finite(v, f"{path}.{k}" if path else str(k), found)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_replace_non_finite(v, f"{path}[{i}]", found) for i, v in enumerate(value)]
    return value


def apply_validation(event: EventRecord) -> EventRecord:
    """Attach write-time issues to ``event`` and break self-cycles.

    NaN and Infinity have no JSON form; they are stored as null and
    reported as warnings. Issues already supplied by the producer are
    kept; new ones are appended.

    Raises:
        TypeError: If the payload holds a value with no JSON form.
    """
    non_finite: List[str] = []
    event.payload = _replace_non_finite(event.payload or {}, "", non_finite)
    issues = [
        ValidationIssue(
            field=path,
            message=f"Non-finite number in '{path}' stored as null",
            severity="warning",
        )
        for path in non_finite
    ]
    issues.extend(validate_event(event))
    if event.parent_event_id is not None and event.parent_event_id == event.event_id:
        event.parent_event_id = None
    if issues:
        logger.debug(
            "Event %s (%s) has %d validation issue(s)",
            event.event_id,
            event.kind.value,
            len(issues),
        )
        event.validation_errors = list(event.validation_errors) + issues
    return event
