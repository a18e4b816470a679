"""Tests for event log core types.

These tests verify:
1. Closed enumerations accept canonical names and PascalCase aliases
2. Kind-tagged payloads keep unknown keys
3. Store timestamps normalize to UTC with microseconds
4. Paging metadata and derived state helpers
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from eventlog.runtime.types import (
    Category,
    EntityType,
    EventKind,
    EventRecord,
    FieldChange,
    IndicatorState,
    PnLState,
    Severity,
    TradeExecutionPayload,
    ValidationIssue,
    generate_event_id,
    generate_run_id,
    page_metadata,
    parse_category,
    parse_entity_type,
    parse_event_kind,
    parse_severity,
    payload_from_dict,
    payload_to_dict,
)
from eventlog.runtime.types._time import _to_store_ts
from eventlog.runtime.types.events import validation_issues_from_json


class TestEnumerations:
    def test_canonical_kind(self):
        assert parse_event_kind("trade_execution") == EventKind.TRADE_EXECUTION

    def test_pascal_case_alias(self):
        assert parse_event_kind("TradeExecution") == EventKind.TRADE_EXECUTION
        assert parse_event_kind("MarketDataEvent") == EventKind.MARKET_DATA

    def test_unknown_kind_lists_valid_values(self):
        with pytest.raises(ValueError) as exc_info:
            parse_event_kind("Heartbeat")
        assert "trade_execution" in str(exc_info.value)

    def test_severity_case_insensitive(self):
        assert parse_severity("WARNING") == Severity.WARNING

    def test_category_alias(self):
        assert parse_category("MarketData") == Category.MARKET_DATA

    def test_entity_type_alias(self):
        assert parse_entity_type("OrderId") == EntityType.ORDER_ID

    def test_enum_passthrough(self):
        assert parse_event_kind(EventKind.RISK_EVENT) is EventKind.RISK_EVENT


class TestPayloads:
    def test_typed_payload_keeps_extra_keys(self):
        payload = payload_from_dict(
            "trade_execution", {"order_id": "o-1", "price": 101.5, "venue": "XNAS"}
        )
        assert isinstance(payload, TradeExecutionPayload)
        assert payload.price == 101.5
        assert payload.extra == {"venue": "XNAS"}
        assert payload.to_dict() == {"order_id": "o-1", "price": 101.5, "venue": "XNAS"}

    def test_payload_to_dict_accepts_json_string(self):
        assert payload_to_dict('{"price": 1}') == {"price": 1}

    def test_payload_to_dict_rejects_non_object(self):
        with pytest.raises(ValueError):
            payload_to_dict("[1, 2]")

    def test_payload_to_dict_empty(self):
        assert payload_to_dict(None) == {}
        assert payload_to_dict("") == {}


class TestIds:
    def test_event_ids_unique(self):
        assert generate_event_id() != generate_event_id()

    def test_run_id_format(self):
        run_id = generate_run_id()
        prefix, date, time_part, suffix = run_id.split("-")
        assert prefix == "run"
        assert len(date) == 8 and date.isdigit()
        assert len(time_part) == 6 and time_part.isdigit()
        assert len(suffix) == 6 and suffix.isalnum()


class TestTimestamps:
    def test_z_suffix_string(self):
        assert _to_store_ts("2024-01-02T09:30:00Z") == "2024-01-02T09:30:00.000000Z"

    def test_offset_converted_to_utc(self):
        assert _to_store_ts("2024-01-02T10:30:00+01:00") == "2024-01-02T09:30:00.000000Z"

    def test_naive_datetime_is_utc(self):
        assert _to_store_ts(datetime(2024, 1, 2, 9, 30)) == "2024-01-02T09:30:00.000000Z"

    def test_microseconds_preserved(self):
        dt = datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc) + timedelta(microseconds=7)
        assert _to_store_ts(dt).endswith(".000007Z")

    def test_malformed_raises(self):
        with pytest.raises(ValueError):
            _to_store_ts("yesterday")


class TestRecords:
    def test_event_to_dict_omits_empty_issues(self):
        event = EventRecord(
            event_id="e1",
            run_id="r1",
            timestamp="2024-01-02T09:30:00.000000Z",
            kind=EventKind.MARKET_DATA,
            severity=Severity.DEBUG,
            category=Category.MARKET_DATA,
            payload={"price": 1.0},
        )
        data = event.to_dict()
        assert data["kind"] == "market_data"
        assert "validation_errors" not in data
        assert "seq" not in data

    def test_validation_issues_from_legacy_shapes(self):
        issues = validation_issues_from_json('["price missing"]')
        assert issues == [ValidationIssue(field="", message="price missing")]
        single = validation_issues_from_json('{"field": "price", "message": "bad", "severity": "WARNING"}')
        assert single[0].severity == "warning"


class TestPageMetadata:
    def test_has_more_when_items_remain(self):
        meta = page_metadata(0, 3, 3, 10)
        assert meta.has_more is True

    def test_last_page_has_no_more(self):
        meta = page_metadata(3, 3, 1, 10)
        assert meta.has_more is False

    def test_exact_fit(self):
        assert page_metadata(1, 5, 5, 10).has_more is False


class TestDerivedState:
    def test_field_change(self):
        change = FieldChange(before=10.0, after=30.0)
        assert change.change == 20.0
        assert change.to_dict() == {"before": 10.0, "after": 30.0, "change": 20.0}

    def test_indicator_key(self):
        assert IndicatorState("sma", "AAPL", 1.0).key == "sma:AAPL"
        assert IndicatorState("vix", None, 1.0).key == "vix"

    def test_total_pnl(self):
        assert PnLState(realized_pnl=5.0, unrealized_pnl=-2.0).total_pnl == 3.0
