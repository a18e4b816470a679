"""
server.py - Query server process for backtest debug event logs.

One server instance per machine serves read-only queries over stdio while
the producer writes the store. The main thread owns the lifecycle:

    1. Take the named instance lock (exit 1 if another instance holds it)
    2. Open the control channel and attach to the store (if it exists yet)
    3. Serve requests on stdin/stdout from a daemon thread
    4. Block on the control channel for shutdown / release / reopen
    5. On shutdown: stop watching, close the store, drop the lock

A file watcher covers store replacement the producer did not announce:
when the file is deleted or replaced the connection is dropped and,
once the new file settles, reattached. Announced releases suppress the
watcher until the matching reopen.

Usage:
    python -m eventlog.api.server --database debug/events.db
    python -m eventlog.api.server --shutdown
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional, TextIO

from eventlog.config.runtime_config import (
    LifecycleConfig,
    get_busy_timeout_ms,
    get_lifecycle_config,
    get_log_level,
    get_store_path,
)
from eventlog.runtime.lifecycle import (
    ControlChannel,
    InstanceLock,
    LifecycleState,
    StoreFileWatcher,
    signal_shutdown,
)
from eventlog.runtime.lifecycle.control_channel import CMD_RELEASE, CMD_REOPEN, CMD_SHUTDOWN
from eventlog.runtime.lifecycle.instance_lock import ACQUIRE_GRACE
from eventlog.runtime.resilient_db import ResilientEventStore

from .routes import ALL_ROUTERS
from .rpc import Dispatcher, RpcContext
from .stdio import StdioRpcServer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class QueryServer:
    """Single-instance query server bound to one store path.

    Attributes:
        store_path: Store file currently served.
        config: Lifecycle settings (lock name, runtime dir, timeouts).
        state: Current lifecycle state, reported by the health operation.
    """

    def __init__(self, store_path: Path, config: Optional[LifecycleConfig] = None):
        self.store_path = Path(store_path)
        self.config = config or get_lifecycle_config()
        self.runtime_dir = self.config.resolved_runtime_dir()
        self.state = LifecycleState.STOPPED
        self.store = ResilientEventStore(self.store_path, busy_timeout_ms=get_busy_timeout_ms())
        self.dispatcher = Dispatcher(
            RpcContext(store=self.store, status=lambda: self.state.value), ALL_ROUTERS
        )
        self._lock = InstanceLock(self.config.lock_name, self.runtime_dir)
        self._channel = ControlChannel(self.config.lock_name, self.runtime_dir)
        self._watcher = StoreFileWatcher(
            self.store_path,
            self._on_store_changed,
            debounce=self.config.watch_debounce,
            poll_interval=self.config.watch_poll_interval,
        )
        self._explicit_release = False

    # =========================================================================
    # Store events
    # =========================================================================

    def _on_store_changed(self, exists: bool) -> None:
        """Watcher callback: the store file was removed or replaced."""
        if self._explicit_release:
            return
        if exists:
            logger.info("Store %s replaced; reconnecting", self.store_path)
            self.state = LifecycleState.RECONNECTING
            if self.store.reopen():
                self.state = LifecycleState.RUNNING
        else:
            logger.info("Store %s removed; releasing connection", self.store_path)
            self.state = LifecycleState.RECONNECTING
            self.store.release()

    def _release(self) -> None:
        self._explicit_release = True
        self.state = LifecycleState.RECONNECTING
        self.store.release()
        self._channel.write_status("released", self.store_path)

    def _reopen(self, path_arg: str) -> None:
        if path_arg:
            self.store_path = Path(path_arg)
        opened = self.store.reopen(self.store_path)
        self._watcher.rebaseline(self.store_path)
        self._explicit_release = False
        if opened:
            self.state = LifecycleState.RUNNING
        else:
            logger.warning(
                "Could not reopen %s; retrying every %.1fs",
                self.store_path,
                self.config.reconnect_delay,
            )
        self._channel.write_status("running", self.store_path, store_open=opened)

    def _retry_attach(self) -> None:
        """Idle tick: attach to a store that appeared after startup or a failed reopen."""
        if self._explicit_release or self.store.is_open:
            return
        if self.store_path.exists() and self.store.open():
            self.state = LifecycleState.RUNNING
            self._watcher.rebaseline(self.store_path)

    # =========================================================================
    # Main loop
    # =========================================================================

    def _serve_stdio(self, stdin: Optional[TextIO], stdout: Optional[TextIO]) -> None:
        try:
            asyncio.run(StdioRpcServer(self.dispatcher).serve(stdin, stdout))
        except Exception:
            logger.exception("Request transport failed")
        # End of input does not stop the server; only the control channel does

    def _control_loop(self) -> None:
        while True:
            command = self._channel.wait(timeout=self.config.reconnect_delay)
            if command is None:
                self._retry_attach()
                continue
            verb, _, arg = command.partition(" ")
            logger.debug("Control command: %s", command)
            if verb == CMD_SHUTDOWN:
                logger.info("Shutdown requested")
                return
            if verb == CMD_RELEASE:
                self._release()
            elif verb == CMD_REOPEN:
                self._reopen(arg.strip())
            else:
                logger.warning("Ignoring unknown control command %r", command)

    def run(
        self,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
        serve_stdio: bool = True,
    ) -> int:
        """Run until a shutdown command arrives.

        Returns:
            Process exit code: 0 after a clean shutdown, 1 if another
            instance already holds the lock.
        """
        if not self._lock.acquire(timeout=ACQUIRE_GRACE):
            holder = self._lock.holder_pid()
            print(
                f"Another eventlog query server is already running (pid {holder or 'unknown'})",
                file=sys.stderr,
            )
            return 1

        self.state = LifecycleState.STARTING
        try:
            self._channel.create()
            if self.store.open():
                self._watcher.rebaseline(self.store_path)
            self._watcher.start()
            self.state = LifecycleState.RUNNING
            self._channel.write_status("running", self.store_path, store_open=self.store.is_open)
            logger.info("Query server running for %s", self.store_path)

            if serve_stdio:
                threading.Thread(
                    target=self._serve_stdio,
                    args=(stdin, stdout),
                    name="eventlog-rpc",
                    daemon=True,
                ).start()

            self._control_loop()
            self.state = LifecycleState.SHUTTING_DOWN
            self._channel.write_status("shutting_down", self.store_path)
        finally:
            self._watcher.stop()
            self.store.close()
            self._channel.close()
            self._lock.release()
            self.state = LifecycleState.STOPPED
            logger.info("Query server stopped")
        return 0


# =============================================================================
# CLI
# =============================================================================


def parse_args(argv: Optional[List[str]] = None):
    import argparse

    parser = argparse.ArgumentParser(description="Backtest debug event log query server")
    parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help="Store file to serve (default: EVENTLOG_DATABASE or config store.path)",
    )
    parser.add_argument(
        "--shutdown",
        action="store_true",
        help="Signal the running server to shut down and exit",
    )
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        logger.debug("Ignoring unrecognized arguments: %s", unknown)
    return args


def main(argv: Optional[List[str]] = None) -> int:
    """Run the query server, or signal a running one to stop."""
    logging.basicConfig(level=get_log_level(), format=LOG_FORMAT, stream=sys.stderr)
    args = parse_args(argv)
    config = get_lifecycle_config()

    if args.shutdown:
        if signal_shutdown(config):
            print("Shutdown signal sent", file=sys.stderr)
            return 0
        print("No running query server found", file=sys.stderr)
        return 1

    store_path = args.database or get_store_path()
    return QueryServer(store_path, config).run()


if __name__ == "__main__":
    sys.exit(main())
