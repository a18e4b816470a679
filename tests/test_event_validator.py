"""Tests for write-time event validation.

These tests verify that the validator:
1. Flags missing required payload fields per event kind
2. Flags non-numeric values in numeric fields
3. Flags oversized payloads
4. Breaks one-event causal cycles (self parent) without rejecting the event
"""

from __future__ import annotations

from eventlog.runtime.event_validator import MAX_PAYLOAD_BYTES, apply_validation, validate_event
from eventlog.runtime.types import ValidationIssue

from conftest import make_event, ts


class TestRequiredFields:
    def test_clean_trade_has_no_issues(self):
        event = make_event("e1", "trade_execution", ts(), {"order_id": "o-1", "price": 10.0, "quantity": 1})
        assert validate_event(event) == []

    def test_missing_price_is_error(self):
        event = make_event("e1", "trade_execution", ts(), {"order_id": "o-1", "quantity": 1})
        issues = validate_event(event)
        assert [(i.field, i.severity) for i in issues] == [("price", "error")]

    def test_missing_quantity_is_warning(self):
        event = make_event("e1", "trade_execution", ts(), {"order_id": "o-1", "price": 1.0})
        issues = validate_event(event)
        assert issues[0].field == "quantity"
        assert issues[0].severity == "warning"

    def test_blank_string_counts_as_missing(self):
        event = make_event("e1", "order_rejection", ts(), {"order_id": " ", "rejection_reason": "x"})
        assert [i.field for i in validate_event(event)] == ["order_id"]

    def test_kinds_without_requirements(self):
        event = make_event("e1", "market_data", ts(), {})
        assert validate_event(event) == []


class TestFieldTypes:
    def test_string_price_flagged(self):
        event = make_event("e1", "market_data", ts(), {"price": "101.5"})
        issues = validate_event(event)
        assert issues[0].field == "price"
        assert "numeric" in issues[0].message

    def test_boolean_is_not_numeric(self):
        event = make_event("e1", "market_data", ts(), {"volume": True})
        assert [i.field for i in validate_event(event)] == ["volume"]


class TestPayloadSize:
    def test_oversized_payload_flagged(self):
        event = make_event("e1", "risk_event", ts(), {"risk_type": "x", "blob": "a" * MAX_PAYLOAD_BYTES})
        assert any(i.field == "payload" for i in validate_event(event))


class TestSelfParent:
    def test_self_parent_dropped_and_recorded(self):
        event = make_event("e1", "market_data", ts(), {}, parent="e1")
        apply_validation(event)
        assert event.parent_event_id is None
        assert event.validation_errors[0].field == "parent_event_id"

    def test_producer_issues_kept(self):
        event = make_event("e1", "market_data", ts(), {"price": "bad"})
        event.validation_errors = [ValidationIssue(field="feed", message="stale quote", severity="warning")]
        apply_validation(event)
        assert [i.field for i in event.validation_errors] == ["feed", "price"]
