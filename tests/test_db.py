"""Tests for the SQLite event store.

These tests verify that the store:
1. Creates the schema in WAL mode on a fresh file
2. Records runs idempotently and lists them with event counts
3. Writes event batches atomically and skips duplicate event ids
4. Refuses to create a store when opened read-side
"""

from __future__ import annotations

import sqlite3

import pytest

from eventlog.runtime.db import SCHEMA_VERSION, EventStore, close_event_store, get_event_store, main

from conftest import RUN_ID, make_event, trading_events, ts


class TestSchema:
    def test_fresh_store_uses_wal(self, store, db_path):
        store.create_run(RUN_ID, ts(0), ts(60), "cfg")
        mode = store.fetch_scalar("PRAGMA journal_mode")
        assert mode.lower() == "wal"
        assert db_path.exists()

    def test_schema_version_recorded(self, store):
        assert store.fetch_scalar("SELECT MAX(version) FROM schema_version") == SCHEMA_VERSION

    def test_in_memory_store(self):
        memory = EventStore()
        memory.create_run(RUN_ID, ts(0), ts(60), "cfg")
        assert memory.get_run(RUN_ID) is not None
        memory.close()

    def test_read_side_does_not_create(self, tmp_path):
        reader = EventStore(tmp_path / "missing.db", create=False)
        with pytest.raises(sqlite3.OperationalError):
            reader.fetch_scalar("SELECT 1")
        assert not (tmp_path / "missing.db").exists()


class TestRuns:
    def test_create_run_normalizes_times(self, store):
        record = store.create_run(RUN_ID, "2024-01-02T09:30:00Z", "2024-01-02T16:00:00Z", "cfg")
        assert record.start_time == "2024-01-02T09:30:00.000000Z"
        stored = store.get_run(RUN_ID)
        assert stored.end_time == "2024-01-02T16:00:00.000000Z"
        assert stored.config_hash == "cfg"

    def test_create_run_twice_is_noop(self, store):
        store.create_run(RUN_ID, ts(0), ts(60), "first")
        store.create_run(RUN_ID, ts(0), ts(60), "second")
        assert len(store.list_runs()) == 1
        assert store.get_run(RUN_ID).config_hash == "first"

    def test_list_runs_includes_event_counts(self, trading_store):
        runs = trading_store.list_runs()
        assert [r.run_id for r in runs] == [RUN_ID]
        assert runs[0].event_count == len(trading_events())

    def test_unknown_run(self, store):
        assert store.get_run("nope") is None


class TestEventWrites:
    def test_batch_insert_returns_count(self, store):
        events = [make_event(f"e{i}", "market_data", ts(i), {"price": i}) for i in range(5)]
        assert store.write_events(events) == 5
        assert store.event_count(RUN_ID) == 5

    def test_duplicate_event_id_skipped(self, store):
        event = make_event("e1", "market_data", ts(0), {"price": 1})
        assert store.write_event(event) is True
        assert store.write_event(event) is False
        assert store.event_count() == 1

    def test_retried_batch_does_not_duplicate(self, store):
        events = [make_event(f"e{i}", "market_data", ts(i), {"price": i}) for i in range(3)]
        store.write_events(events[:2])
        assert store.write_events(events) == 1
        assert store.event_count() == 3

    def test_non_finite_payload_fails_batch(self, store):
        events = [
            make_event("e0", "market_data", ts(0), {"price": 1.0}),
            make_event("e1", "indicator_calculation", ts(1), {"value": float("nan")}),
        ]
        with pytest.raises(ValueError):
            store.write_events(events)
        assert store.event_count() == 0

    def test_round_trip_preserves_fields(self, store):
        event = make_event(
            "fill-x",
            "trade_execution",
            ts(5),
            {"order_id": "o-1", "price": 101.25, "quantity": 3},
            parent="place-x",
            severity="warning",
        )
        store.write_event(event)
        loaded = store.get_event("fill-x", run_id=RUN_ID)
        assert loaded.payload == {"order_id": "o-1", "price": 101.25, "quantity": 3}
        assert loaded.parent_event_id == "place-x"
        assert loaded.severity.value == "warning"
        assert loaded.timestamp == ts(5)
        assert loaded.seq is not None

    def test_get_event_scoped_to_run(self, trading_store):
        assert trading_store.get_event("fill-0", run_id="other-run") is None

    def test_kind_counts(self, trading_store):
        counts = trading_store.kind_counts(RUN_ID)
        assert counts["trade_execution"] == 10
        assert counts["position_update"] == 10
        assert counts["order_rejection"] == 1


class TestGlobalStore:
    def test_singleton(self, tmp_path):
        close_event_store()
        try:
            first = get_event_store(tmp_path / "global.db")
            assert get_event_store() is first
        finally:
            close_event_store()


class TestInspectionCli:
    def _run(self, monkeypatch, *argv):
        monkeypatch.setattr("sys.argv", ["eventlog.runtime.db", *argv])
        with pytest.raises(SystemExit) as exc_info:
            main()
        return exc_info.value.code

    def test_runs_listing(self, trading_store, db_path, monkeypatch, capsys):
        assert self._run(monkeypatch, "--db-path", str(db_path), "runs") == 0
        assert RUN_ID in capsys.readouterr().out

    def test_stats_per_kind(self, trading_store, db_path, monkeypatch, capsys):
        assert self._run(monkeypatch, "--db-path", str(db_path), "stats", RUN_ID) == 0
        out = capsys.readouterr().out
        assert "trade_execution: 10" in out

    def test_missing_store(self, tmp_path, monkeypatch, capsys):
        assert self._run(monkeypatch, "--db-path", str(tmp_path / "none.db"), "runs") == 1
        assert "Store not found" in capsys.readouterr().out
