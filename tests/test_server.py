"""Tests for the query server process and its command line.

The server runs on a background thread of the test process; control
commands go through the same named channel a producer would use.
"""

from __future__ import annotations

import io
import json
import threading
import time
from pathlib import Path

import pytest

from eventlog.api.server import QueryServer, main, parse_args
from eventlog.config.runtime_config import ENV_RUNTIME_DIR, get_lifecycle_config, reset_config
from eventlog.runtime.db import EventStore, StoreUnavailableError
from eventlog.runtime.lifecycle import ControlClient, InstanceLock, LifecycleState

from conftest import RUN_ID, make_event, ts


def _new_store(db_path, run_id=RUN_ID, events=1):
    store = EventStore(db_path)
    store.create_run(run_id, ts(0), ts(60), "cfg")
    store.write_events(
        [make_event(f"{run_id}-{i}", "market_data", ts(i), {"price": 1.0}, run_id=run_id) for i in range(events)]
    )
    store.close()


def _remove_store(db_path):
    for suffix in ("", "-wal", "-shm"):
        path = db_path.with_name(db_path.name + suffix)
        if path.exists():
            path.unlink()


def _wait(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _run_ids(server):
    return server.store.run(lambda engine, state: [r.run_id for r in engine.store.list_runs()])


def _eventually_run_ids(server, expected):
    """Retry while the server is between connections, as a client would."""

    def check():
        try:
            return _run_ids(server) == expected
        except StoreUnavailableError:
            return False

    return _wait(check)


class ServerThread:
    def __init__(self, server, **kwargs):
        self.server = server
        self.exit_code = None
        self.thread = threading.Thread(target=self._run, kwargs=kwargs, daemon=True)

    def _run(self, **kwargs):
        self.exit_code = self.server.run(**kwargs)

    def start(self):
        self.thread.start()
        return self

    def stop(self, client):
        client.signal_shutdown()
        self.thread.join(timeout=3.0)


@pytest.fixture
def client(lifecycle_config, runtime_dir):
    return ControlClient(lifecycle_config.lock_name, runtime_dir)


@pytest.fixture
def running_server(db_path, lifecycle_config, client):
    _new_store(db_path, events=3)
    handle = ServerThread(QueryServer(db_path, lifecycle_config), serve_stdio=False).start()
    assert client.wait_for_status(lambda s: s.get("state") == "running", timeout=3.0)
    yield handle
    handle.stop(client)


class TestSingleInstance:
    def test_second_instance_exits_with_error(self, db_path, lifecycle_config, runtime_dir, capsys):
        with InstanceLock(lifecycle_config.lock_name, runtime_dir):
            code = QueryServer(db_path, lifecycle_config).run(serve_stdio=False)
        assert code == 1
        assert "already running" in capsys.readouterr().err

    def test_starts_while_lock_is_checked(self, db_path, lifecycle_config, runtime_dir, client):
        stop = threading.Event()

        def check_loop():
            checker = InstanceLock(lifecycle_config.lock_name, runtime_dir)
            while not stop.is_set() and not checker.is_held_elsewhere():
                pass

        check_thread = threading.Thread(target=check_loop, daemon=True)
        check_thread.start()
        handle = ServerThread(QueryServer(db_path, lifecycle_config), serve_stdio=False).start()
        try:
            assert client.wait_for_status(lambda s: s.get("state") == "running", timeout=3.0)
            assert handle.exit_code is None
        finally:
            stop.set()
            check_thread.join(timeout=2.0)
            handle.stop(client)
        assert handle.exit_code == 0

    def test_clean_shutdown(self, running_server, client, lifecycle_config, runtime_dir):
        running_server.stop(client)
        assert running_server.exit_code == 0
        assert running_server.server.state == LifecycleState.STOPPED
        assert InstanceLock(lifecycle_config.lock_name, runtime_dir).is_held_elsewhere() is False
        assert client.is_listening() is False


class TestControlCommands:
    def test_release_then_reopen(self, running_server, client, db_path):
        server = running_server.server
        assert _run_ids(server) == [RUN_ID]

        seq = client.status_seq()
        assert client.request_release()
        assert client.wait_for_status(lambda s: s["seq"] > seq and s["state"] == "released", timeout=3.0)
        assert server.store.released is True

        _remove_store(db_path)
        _new_store(db_path, run_id="run-2", events=2)

        seq = client.status_seq()
        assert client.request_reopen(db_path)
        status = client.wait_for_status(lambda s: s["seq"] > seq and s["state"] == "running", timeout=3.0)
        assert status["store_open"] is True
        assert server.state == LifecycleState.RUNNING
        assert _run_ids(server) == ["run-2"]

    def test_reopen_at_new_path(self, running_server, client, tmp_path):
        other = tmp_path / "other" / "events.db"
        _new_store(other, run_id="run-other")
        seq = client.status_seq()
        client.request_release()
        client.request_reopen(other)
        assert client.wait_for_status(lambda s: s["seq"] > seq + 1, timeout=3.0)
        assert running_server.server.store_path == other
        assert _run_ids(running_server.server) == ["run-other"]

    def test_store_created_after_start(self, db_path, lifecycle_config, client):
        handle = ServerThread(QueryServer(db_path, lifecycle_config), serve_stdio=False).start()
        try:
            status = client.wait_for_status(lambda s: s.get("state") == "running", timeout=3.0)
            assert status["store_open"] is False
            _new_store(db_path)
            assert _eventually_run_ids(handle.server, [RUN_ID])
        finally:
            handle.stop(client)

    def test_unannounced_replacement_reattaches(self, running_server, db_path):
        server = running_server.server
        _remove_store(db_path)
        assert _wait(lambda: not server.store.is_open)
        _new_store(db_path, run_id="run-3")
        assert _eventually_run_ids(server, ["run-3"])


class TestStdioServing:
    def test_requests_answered_and_eof_keeps_running(self, db_path, lifecycle_config, client):
        _new_store(db_path, events=2)
        stdin = io.StringIO(json.dumps({"id": 1, "method": "health"}) + "\n")
        stdout = io.StringIO()
        handle = ServerThread(
            QueryServer(db_path, lifecycle_config), stdin=stdin, stdout=stdout
        ).start()
        try:
            assert _wait(lambda: stdout.getvalue().endswith("\n"))
            response = json.loads(stdout.getvalue().splitlines()[0])
            assert response["id"] == 1
            assert response["result"]["status"] == "running"
            assert handle.thread.is_alive()
        finally:
            handle.stop(client)
        assert handle.exit_code == 0


class TestCommandLine:
    def test_unknown_arguments_ignored(self):
        args = parse_args(["--database", "run/events.db", "--stdio", "--verbose"])
        assert args.database == Path("run/events.db")
        assert args.shutdown is False

    def test_shutdown_without_server(self, monkeypatch, runtime_dir, capsys):
        monkeypatch.setenv(ENV_RUNTIME_DIR, str(runtime_dir))
        reset_config()
        assert main(["--shutdown"]) == 1
        assert "No running query server" in capsys.readouterr().err

    def test_shutdown_signals_running_server(self, monkeypatch, runtime_dir, db_path):
        monkeypatch.setenv(ENV_RUNTIME_DIR, str(runtime_dir))
        reset_config()
        config = get_lifecycle_config()
        client = ControlClient(config.lock_name, runtime_dir)
        handle = ServerThread(QueryServer(db_path, config), serve_stdio=False).start()
        assert client.wait_for_status(lambda s: s.get("state") == "running", timeout=3.0)

        assert main(["--shutdown"]) == 0
        handle.thread.join(timeout=3.0)
        assert handle.exit_code == 0
