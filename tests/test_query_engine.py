"""Tests for the query engine.

Uses the trading_store fixture: ten filled orders alternating AAPL/MSFT,
each a place -> fill -> position chain, plus indicators, one order still
open and one rejected order.
"""

from __future__ import annotations

import math

import pytest

from eventlog.runtime.ingestion import IngestionPipeline
from eventlog.runtime.query_engine import QueryEngine, normalize_field_path
from eventlog.runtime.types import EventKind, QueryValidationError

from conftest import RUN_ID, make_event, ts

CHAIN_PATTERN = ["state_change", "trade_execution", "position_update"]


@pytest.fixture
def engine(trading_store):
    return QueryEngine(trading_store)


class TestFilteredQuery:
    def test_filter_by_kind_ordered_by_time(self, engine):
        page = engine.query_events(RUN_ID, kinds=["trade_execution"])
        assert [e.event_id for e in page.events] == [f"fill-{i}" for i in range(10)]
        assert page.metadata.total_count == 10
        assert page.metadata.has_more is False

    def test_paging(self, engine):
        first = engine.query_events(RUN_ID, kinds=["TradeExecution"], page_size=3)
        assert len(first.events) == 3
        assert first.metadata.has_more is True

        last = engine.query_events(RUN_ID, kinds=["trade_execution"], page_size=3, page_index=3)
        assert [e.event_id for e in last.events] == ["fill-9"]
        assert last.metadata.has_more is False

    def test_page_size_clamped(self, engine):
        page = engine.query_events(RUN_ID, page_size=10_000)
        assert page.metadata.page_size == 1000

    def test_time_range_inclusive(self, engine):
        page = engine.query_events(RUN_ID, kinds=["trade_execution"], start_time=ts(61), end_time=ts(121))
        assert [e.event_id for e in page.events] == ["fill-1", "fill-2"]

    def test_severity_filter(self, engine):
        page = engine.query_events(RUN_ID, severity="warning")
        assert [e.event_id for e in page.events] == ["reject-1"]

    def test_category_filter(self, engine):
        page = engine.query_events(RUN_ID, category="indicators")
        assert {e.event_id for e in page.events} == {"sma-1", "sma-2"}

    def test_unknown_kind_rejected(self, engine):
        with pytest.raises(QueryValidationError):
            engine.query_events(RUN_ID, kinds=["heartbeat"])

    def test_inverted_time_range_rejected(self, engine):
        with pytest.raises(QueryValidationError):
            engine.query_events(RUN_ID, start_time=ts(100), end_time=ts(10))

    def test_malformed_time_rejected(self, engine):
        with pytest.raises(QueryValidationError):
            engine.query_events(RUN_ID, start_time="not-a-time")

    def test_other_run_empty(self, engine):
        page = engine.query_events("run-2")
        assert page.events == []
        assert page.metadata.total_count == 0

    def test_query_time_reported(self, engine):
        page = engine.query_events(RUN_ID)
        assert page.metadata.query_time_ms >= 0.0


class TestEntityQuery:
    def test_by_order_id(self, engine):
        page = engine.query_by_entity(RUN_ID, "order_id", "ord-3")
        assert [e.event_id for e in page.events] == ["place-3", "fill-3"]

    def test_by_security_symbol(self, engine):
        page = engine.query_by_entity(RUN_ID, "SecuritySymbol", "MSFT", kinds=["trade_execution"])
        assert [e.event_id for e in page.events] == ["fill-1", "fill-3", "fill-5", "fill-7", "fill-9"]

    def test_by_position_id(self, engine):
        page = engine.query_by_entity(RUN_ID, "position_id", "pos-AAPL")
        assert page.metadata.total_count == 5

    def test_unknown_entity_type_rejected(self, engine):
        with pytest.raises(QueryValidationError):
            engine.query_by_entity(RUN_ID, "account", "A1")

    def test_empty_value_rejected(self, engine):
        with pytest.raises(QueryValidationError):
            engine.query_by_entity(RUN_ID, "order_id", "")


class TestCausalChains:
    def test_depth_one_returns_direct_children(self, engine):
        chain = engine.query_chain(RUN_ID, "place-0", max_depth=1, expected_pattern=CHAIN_PATTERN)
        assert chain.root.event_id == "place-0"
        assert [e.event_id for e in chain.events] == ["fill-0"]
        assert chain.depth_reached == 1
        assert chain.complete is False
        assert chain.missing_kinds == [EventKind.POSITION_UPDATE]

    def test_depth_two_completes_pattern(self, engine):
        chain = engine.query_chain(RUN_ID, "place-0", max_depth=2, expected_pattern=CHAIN_PATTERN)
        assert [e.event_id for e in chain.events] == ["fill-0", "pos-0"]
        assert chain.complete is True

    def test_missing_root_is_not_found(self, engine):
        chain = engine.query_chain(RUN_ID, "nope")
        assert chain.found is False
        assert chain.events == []

    def test_cycle_bounded_by_depth(self, store):
        store.write_events(
            [
                make_event("a", "state_change", ts(0), {}, parent="b"),
                make_event("b", "state_change", ts(1), {}, parent="a"),
            ]
        )
        chain = QueryEngine(store).query_chain(RUN_ID, "a", max_depth=50)
        assert [e.event_id for e in chain.events] == ["b"]

    def test_discovered_sequences_complete_only(self, engine):
        page = engine.query_sequences(RUN_ID, pattern=CHAIN_PATTERN)
        assert page.metadata.total_sequences == 10
        assert [s.root.event_id for s in page.sequences][:2] == ["place-0", "place-1"]
        assert all(s.complete for s in page.sequences)

    def test_include_incomplete(self, engine):
        page = engine.query_sequences(RUN_ID, pattern=CHAIN_PATTERN, include_incomplete=True)
        assert page.metadata.total_sequences == 12
        incomplete = [s.root.event_id for s in page.sequences if not s.complete]
        assert incomplete == ["place-open", "place-rej"]

    def test_sequence_paging(self, engine):
        page = engine.query_sequences(RUN_ID, pattern=CHAIN_PATTERN, page_size=4, page_index=2)
        assert [s.root.event_id for s in page.sequences] == ["place-8", "place-9"]
        assert page.metadata.has_more is False

    def test_explicit_root_returned_even_if_incomplete(self, engine):
        page = engine.query_sequences(RUN_ID, root_event_id="place-rej", pattern=CHAIN_PATTERN)
        assert len(page.sequences) == 1
        assert page.sequences[0].complete is False
        assert [e.event_id for e in page.sequences[0].events] == ["reject-1"]

    def test_explicit_missing_root_empty(self, engine):
        page = engine.query_sequences(RUN_ID, root_event_id="nope", pattern=CHAIN_PATTERN)
        assert page.sequences == []


class TestAggregation:
    def test_trade_price_statistics(self, engine):
        result = engine.aggregate(RUN_ID, "trade_execution", "price")
        values = result.values
        assert values["count"] == 10
        assert values["sum"] == pytest.approx(1045.0)
        assert values["avg"] == pytest.approx(104.5)
        assert values["min"] == 100.0
        assert values["max"] == 109.0
        assert values["stddev"] == pytest.approx(math.sqrt(8.25))

    def test_avg_is_sum_over_count(self, engine):
        values = engine.aggregate(RUN_ID, "trade_execution", "$.price", ["sum", "count", "avg"]).values
        assert values["avg"] == pytest.approx(values["sum"] / values["count"])
        assert set(values) == {"sum", "count", "avg"}

    def test_min_le_avg_le_max(self, engine):
        values = engine.aggregate(RUN_ID, "position_update", "payload.average_price").values
        assert values["min"] <= values["avg"] <= values["max"]

    def test_non_numeric_values_excluded(self, store):
        store.write_events(
            [
                make_event("m1", "market_data", ts(0), {"price": 10}),
                make_event("m2", "market_data", ts(1), {"price": "n/a"}),
                make_event("m3", "market_data", ts(2), {}),
            ]
        )
        result = QueryEngine(store).aggregate(RUN_ID, "market_data", "price")
        assert result.values["count"] == 1
        assert result.total_events == 3
        assert result.to_dict()["metadata"]["total_events"] == 3

    def test_no_values(self, engine):
        values = engine.aggregate(RUN_ID, "risk_event", "price").values
        assert values["count"] == 0
        assert values["sum"] == 0.0
        assert values["avg"] is None
        assert values["stddev"] is None

    def test_time_window(self, engine):
        values = engine.aggregate(RUN_ID, "trade_execution", "price", ["count"], end_time=ts(121)).values
        assert values["count"] == 3

    def test_bad_field_path_rejected(self, engine):
        with pytest.raises(QueryValidationError):
            engine.aggregate(RUN_ID, "trade_execution", "price; DROP TABLE events")

    def test_unknown_function_rejected(self, engine):
        with pytest.raises(QueryValidationError):
            engine.aggregate(RUN_ID, "trade_execution", "price", ["median"])


class TestFieldPaths:
    @pytest.mark.parametrize(
        "raw, expected",
        [("price", "$.price"), ("$.fill.price", "$.fill.price"), ("payload.price", "$.price")],
    )
    def test_normalize(self, raw, expected):
        assert normalize_field_path(raw) == expected

    @pytest.mark.parametrize("raw", ["", "a..b", "price.", "pri ce"])
    def test_reject(self, raw):
        with pytest.raises(QueryValidationError):
            normalize_field_path(raw)


class TestValidationErrorQuery:
    def test_events_with_issues(self, store):
        store.write_events([make_event("clean", "market_data", ts(0), {"price": 1.0})])
        with IngestionPipeline(store, start_timer=False) as pipeline:
            pipeline.write(make_event("t1", "trade_execution", ts(1), {"order_id": "o", "price": 1.0}))
            pipeline.write(make_event("t2", "trade_execution", ts(2), {"order_id": "o"}))

        engine = QueryEngine(store)
        assert [e.event_id for e in engine.query_validation_errors(RUN_ID).events] == ["t1", "t2"]
        errors_only = engine.query_validation_errors(RUN_ID, severity="error")
        assert [e.event_id for e in errors_only.events] == ["t2"]

    def test_unknown_issue_severity(self, store):
        with pytest.raises(QueryValidationError):
            QueryEngine(store).query_validation_errors(RUN_ID, severity="fatal")
