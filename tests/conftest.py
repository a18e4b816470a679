"""
Test fixtures and utilities for event log tests.

This module provides reusable fixtures for testing the store, query engine
and lifecycle pieces, including a populated trading-run store and an
isolated runtime directory for lock/control-channel tests.
"""

# Filter gherkin deprecation warning before any imports trigger it
import warnings
warnings.filterwarnings(
    "ignore",
    message="'maxsplit' is passed as positional argument",
    category=DeprecationWarning,
)

import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from eventlog.api.server import QueryServer
from eventlog.config.runtime_config import (
    ENV_BATCH_SIZE,
    ENV_DATABASE,
    ENV_FLUSH_INTERVAL,
    ENV_LOG_LEVEL,
    ENV_RUNTIME_DIR,
    LifecycleConfig,
    reset_config,
)
from eventlog.runtime.db import EventStore
from eventlog.runtime.lifecycle import ControlClient
from eventlog.runtime.types import (
    EventRecord,
    parse_category,
    parse_event_kind,
    parse_severity,
)
from eventlog.runtime.types._time import STORE_TS_FORMAT

# Import BDD step definitions from tests/bdd/steps/ so pytest-bdd can discover them
_tests_dir = Path(__file__).parent
if str(_tests_dir) not in sys.path:
    sys.path.insert(0, str(_tests_dir))

from bdd.steps.store_recycling_steps import *  # noqa: E402, F401, F403

RUN_ID = "run-1"
BASE_TIME = datetime(2024, 1, 2, 9, 30, 0, tzinfo=timezone.utc)


def ts(seconds: float = 0) -> str:
    """Store timestamp text ``seconds`` after BASE_TIME."""
    return (BASE_TIME + timedelta(seconds=seconds)).strftime(STORE_TS_FORMAT)


def make_event(
    event_id: str,
    kind: str,
    timestamp: str,
    payload: Optional[Dict[str, Any]] = None,
    parent: Optional[str] = None,
    severity: str = "info",
    category: str = "execution",
    run_id: str = RUN_ID,
) -> EventRecord:
    return EventRecord(
        event_id=event_id,
        run_id=run_id,
        timestamp=timestamp,
        kind=parse_event_kind(kind),
        severity=parse_severity(severity),
        category=parse_category(category),
        payload=dict(payload or {}),
        parent_event_id=parent,
    )


def trading_events() -> List[EventRecord]:
    """Ten filled orders alternating AAPL/MSFT plus indicator and order lifecycle events.

    Order i is placed at minute i: place-i (state_change) -> fill-i
    (trade_execution, price 100 + i) -> pos-i (position_update).
    """
    events: List[EventRecord] = []
    held: Dict[str, List[float]] = {"AAPL": [], "MSFT": []}
    for i in range(10):
        symbol = "AAPL" if i % 2 == 0 else "MSFT"
        order_id = f"ord-{i}"
        price = 100.0 + i
        held[symbol].append(price)
        events.append(
            make_event(
                f"place-{i}",
                "state_change",
                ts(i * 60),
                {
                    "state_type": "order",
                    "order_id": order_id,
                    "order_status": "placed",
                    "security_symbol": symbol,
                },
            )
        )
        events.append(
            make_event(
                f"fill-{i}",
                "trade_execution",
                ts(i * 60 + 1),
                {
                    "order_id": order_id,
                    "price": price,
                    "quantity": 10,
                    "direction": "buy",
                    "remaining_quantity": 0,
                    "security_symbol": symbol,
                },
                parent=f"place-{i}",
            )
        )
        events.append(
            make_event(
                f"pos-{i}",
                "position_update",
                ts(i * 60 + 2),
                {
                    "security_symbol": symbol,
                    "quantity": 10.0 * len(held[symbol]),
                    "average_price": sum(held[symbol]) / len(held[symbol]),
                    "realized_pnl": 0.0,
                    "unrealized_pnl": float(i),
                    "position_id": f"pos-{symbol}",
                },
                parent=f"fill-{i}",
            )
        )

    events.append(
        make_event(
            "sma-1",
            "indicator_calculation",
            ts(30),
            {"indicator_name": "sma", "value": 100.5, "security_symbol": "AAPL"},
            category="indicators",
        )
    )
    events.append(
        make_event(
            "sma-2",
            "indicator_calculation",
            ts(330),
            {"indicator_name": "sma", "value": 102.0, "security_symbol": "AAPL"},
            category="indicators",
        )
    )
    # Still open at the end: cancel requested but never confirmed
    events.append(
        make_event(
            "place-open",
            "state_change",
            ts(600),
            {
                "state_type": "order",
                "order_id": "ord-open",
                "order_status": "placed",
                "security_symbol": "AAPL",
            },
        )
    )
    events.append(
        make_event(
            "cancel-open",
            "state_change",
            ts(660),
            {
                "state_type": "order",
                "order_id": "ord-open",
                "order_status": "cancel_requested",
                "security_symbol": "AAPL",
            },
            parent="place-open",
        )
    )
    events.append(
        make_event(
            "place-rej",
            "state_change",
            ts(720),
            {
                "state_type": "order",
                "order_id": "ord-rej",
                "order_status": "placed",
                "security_symbol": "MSFT",
            },
        )
    )
    events.append(
        make_event(
            "reject-1",
            "order_rejection",
            ts(721),
            {
                "order_id": "ord-rej",
                "rejection_reason": "insufficient buying power",
                "security_symbol": "MSFT",
            },
            parent="place-rej",
            severity="warning",
        )
    )
    return events


# ============================================================================
# Configuration Isolation
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Clear EVENTLOG_* overrides and the cached runtime.yaml for each test."""
    for name in (ENV_DATABASE, ENV_RUNTIME_DIR, ENV_LOG_LEVEL, ENV_BATCH_SIZE, ENV_FLUSH_INTERVAL):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "debug" / "events.db"


@pytest.fixture
def store(db_path):
    """Empty writer-side store on disk."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    s = EventStore(db_path)
    yield s
    s.close()


@pytest.fixture
def trading_store(store):
    """Store holding RUN_ID with the trading_events() dataset."""
    store.create_run(RUN_ID, ts(0), ts(3600), "cfg-abc123")
    store.write_events(trading_events())
    return store


# ============================================================================
# Lifecycle Fixtures
# ============================================================================


@pytest.fixture
def runtime_dir(tmp_path) -> Path:
    path = tmp_path / "rt"
    path.mkdir()
    return path


@pytest.fixture
def lifecycle_config(runtime_dir) -> LifecycleConfig:
    """Fast timeouts and a private runtime directory."""
    return LifecycleConfig(
        lock_name="eventlog-test",
        runtime_dir=runtime_dir,
        startup_timeout=0.5,
        shutdown_timeout=0.5,
        reconnect_delay=0.05,
        watch_debounce=0.05,
        watch_poll_interval=0.01,
    )


class ThreadLauncher:
    """Launcher double: runs a QueryServer on a thread of the test process.

    Accepts the same call a LifecycleManager makes to spawn_detached, so the
    lock, control channel and status handling run for real without
    spawning processes.
    """

    def __init__(self, config: LifecycleConfig):
        self.config = config
        self.calls: List[Dict[str, Any]] = []
        self.servers: List[QueryServer] = []
        self.threads: List[threading.Thread] = []

    def __call__(self, executable, args, log_path=None, env=None):
        self.calls.append({"executable": executable, "args": list(args), "log_path": log_path, "env": env})
        store_path = Path(args[args.index("--database") + 1])
        server = QueryServer(store_path, self.config)
        thread = threading.Thread(target=server.run, kwargs={"serve_stdio": False}, daemon=True)
        thread.start()
        self.servers.append(server)
        self.threads.append(thread)

    def stop_all(self) -> None:
        ControlClient(self.config.lock_name, self.config.resolved_runtime_dir()).signal_shutdown()
        for thread in self.threads:
            thread.join(timeout=2.0)


@pytest.fixture
def server_launcher(lifecycle_config):
    launcher = ThreadLauncher(lifecycle_config)
    yield launcher
    launcher.stop_all()


# ============================================================================
# BDD Context Fixture
# ============================================================================


@pytest.fixture
def bdd_context():
    """
    Shared context for BDD steps.
    Stores the lifecycle manager, event logger and results for assertions.
    """
    context: Dict[str, Any] = {}
    yield context
    event_logger = context.get("event_logger")
    if event_logger is not None:
        event_logger.close()


# ============================================================================
# Pytest Configuration for BDD
# ============================================================================


def pytest_configure(config):
    """Configure pytest, including BDD support."""
    warnings.filterwarnings(
        "ignore",
        category=DeprecationWarning,
        module="gherkin.*",
    )
    config.addinivalue_line(
        "markers",
        "bdd: mark test as BDD-driven (runs via pytest-bdd)",
    )
