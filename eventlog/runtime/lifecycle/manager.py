"""
manager.py - Producer-side lifecycle of the single query-server instance.

State machine:

    Stopped -> Starting -> Running -> Reconnecting -> Running
                                   -> ShuttingDown -> Stopped

- ensure_running(): if the instance lock is held elsewhere the server is
  already up (success). Otherwise spawn a detached server and wait up to
  the startup timeout for it to take the lock.
- prepare_for_cleanup(): ask the server to close its store connection
  (without exiting) so the store files can be deleted.
- notify_store_ready(): ask the server to reopen the (possibly new) store.
- shutdown(): signal the server and wait up to the shutdown timeout for
  the lock to be released.

Failures are reported as False returns and logged; only invalid state
transitions raise (LifecycleError).

Usage:
    from eventlog.runtime.lifecycle import LifecycleManager

    manager = LifecycleManager(store_path)
    manager.ensure_running()
    manager.prepare_for_cleanup()
    cleanup_store(store_path)
    ...create new store...
    manager.notify_store_ready()
"""

from __future__ import annotations

import logging
import os
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional

from eventlog.config.runtime_config import ENV_RUNTIME_DIR, LifecycleConfig, get_lifecycle_config

from .control_channel import ControlClient
from .instance_lock import InstanceLock
from .launcher import server_command, spawn_detached

logger = logging.getLogger(__name__)

_PROBE_INTERVAL = 0.05


class LifecycleError(RuntimeError):
    """An operation was attempted from a state that does not allow it."""


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"


ALLOWED_TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    # Stopped -> Running adopts a server another process already started
    LifecycleState.STOPPED: frozenset({LifecycleState.STARTING, LifecycleState.RUNNING}),
    LifecycleState.STARTING: frozenset({LifecycleState.RUNNING, LifecycleState.STOPPED}),
    LifecycleState.RUNNING: frozenset(
        {LifecycleState.RECONNECTING, LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED}
    ),
    LifecycleState.RECONNECTING: frozenset(
        {LifecycleState.RUNNING, LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED}
    ),
    LifecycleState.SHUTTING_DOWN: frozenset({LifecycleState.STOPPED}),
}


class LifecycleManager:
    """Keeps exactly one query server alive for a store path.

    Attributes:
        store_path: Store file the server should serve.
        config: Timeouts, lock name and runtime directory.
        state: Current lifecycle state.
    """

    def __init__(
        self,
        store_path: Path,
        config: Optional[LifecycleConfig] = None,
        launcher: Callable[..., object] = spawn_detached,
        command_factory: Callable[[Path], List[str]] = server_command,
    ):
        self.store_path = Path(store_path)
        self.config = config or get_lifecycle_config()
        self.runtime_dir = self.config.resolved_runtime_dir()
        self._launcher = launcher
        self._command_factory = command_factory
        self._lock = InstanceLock(self.config.lock_name, self.runtime_dir)
        self._client = ControlClient(self.config.lock_name, self.runtime_dir)
        self._state = LifecycleState.STOPPED
        self._state_lock = threading.RLock()

    @property
    def state(self) -> LifecycleState:
        return self._state

    def _transition(self, target: LifecycleState) -> None:
        with self._state_lock:
            if target == self._state:
                return
            if target not in ALLOWED_TRANSITIONS[self._state]:
                raise LifecycleError(
                    f"Invalid lifecycle transition {self._state.value} -> {target.value}"
                )
            logger.debug("Lifecycle %s -> %s", self._state.value, target.value)
            self._state = target

    def is_server_running(self) -> bool:
        """Probe the instance lock without taking it."""
        return self._lock.is_held_elsewhere()

    def _wait_until(self, predicate: Callable[[], bool], timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if predicate():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(_PROBE_INTERVAL)

    def _adopt_running_server(self) -> bool:
        if self._state in (LifecycleState.STOPPED, LifecycleState.STARTING) and self.is_server_running():
            self._transition(LifecycleState.RUNNING)
        return self._state in (LifecycleState.RUNNING, LifecycleState.RECONNECTING)

    # =========================================================================
    # Operations
    # =========================================================================

    def ensure_running(self) -> bool:
        """Make sure a server instance exists.

        Returns:
            True if a server holds the instance lock when the call returns.
        """
        with self._state_lock:
            if self.is_server_running():
                if self._state in (LifecycleState.STOPPED, LifecycleState.STARTING):
                    self._transition(LifecycleState.RUNNING)
                return True

            if self._state in (LifecycleState.RUNNING, LifecycleState.RECONNECTING):
                logger.warning("Query server is no longer running; restarting")
                self._transition(LifecycleState.STOPPED)

            self._transition(LifecycleState.STARTING)
            command = self._command_factory(self.store_path)
            env = os.environ.copy()
            env[ENV_RUNTIME_DIR] = str(self.runtime_dir)
            try:
                self._launcher(
                    command[0],
                    command[1:],
                    log_path=self.runtime_dir / f"{self.config.lock_name}.log",
                    env=env,
                )
            except OSError as e:
                logger.error("Failed to spawn query server: %s", e)
                self._transition(LifecycleState.STOPPED)
                return False

            if self._wait_until(self.is_server_running, self.config.startup_timeout):
                self._transition(LifecycleState.RUNNING)
                logger.info("Query server running for %s", self.store_path)
                return True

            logger.error(
                "Query server did not start within %.1fs", self.config.startup_timeout
            )
            self._transition(LifecycleState.STOPPED)
            return False

    def prepare_for_cleanup(self) -> bool:
        """Ask the server to release its store connection.

        Returns:
            True if the store is safe to delete (released, or no server).
        """
        with self._state_lock:
            if not self._adopt_running_server():
                logger.debug("No query server running; nothing to release")
                return True
            self._transition(LifecycleState.RECONNECTING)
            before = self._client.status_seq()
            if not self._client.request_release():
                logger.warning("Query server stopped listening; treating store as released")
                self._transition(LifecycleState.STOPPED)
                return True
            status = self._client.wait_for_status(
                lambda s: s.get("seq", 0) > before and s.get("state") == "released",
                timeout=self.config.shutdown_timeout,
            )
            if status is None:
                logger.warning("Query server did not acknowledge release in time")
                return False
            return True

    def notify_store_ready(self, store_path: Optional[Path] = None) -> bool:
        """Ask the server to reopen the store after replacement.

        Starts a server if none is running.
        """
        with self._state_lock:
            if store_path is not None:
                self.store_path = Path(store_path)
            if self._state != LifecycleState.RECONNECTING:
                return self.ensure_running()

            before = self._client.status_seq()
            if not self._client.request_reopen(self.store_path):
                self._transition(LifecycleState.STOPPED)
                return self.ensure_running()
            status = self._client.wait_for_status(
                lambda s: s.get("seq", 0) > before and s.get("state") == "running",
                timeout=self.config.startup_timeout,
            )
            self._transition(LifecycleState.RUNNING)
            if status is None:
                logger.warning(
                    "Query server did not confirm reopening %s; it will retry on its own",
                    self.store_path,
                )
                return False
            return True

    def shutdown(self) -> bool:
        """Signal the server to exit and wait for the instance lock to free.

        Returns:
            True if a server was signalled and released the lock in time.
        """
        with self._state_lock:
            if not self.is_server_running():
                logger.info("No query server running")
                self._transition(LifecycleState.STOPPED)
                return False
            self._adopt_running_server()
            self._transition(LifecycleState.SHUTTING_DOWN)
            if not self._client.signal_shutdown():
                logger.warning("Query server is not listening for shutdown")
            stopped = self._wait_until(
                lambda: not self.is_server_running(), self.config.shutdown_timeout
            )
            self._transition(LifecycleState.STOPPED)
            if not stopped:
                logger.warning(
                    "Query server did not exit within %.1fs", self.config.shutdown_timeout
                )
            return stopped


def signal_shutdown(config: Optional[LifecycleConfig] = None) -> bool:
    """Signal a running server to shut down without waiting.

    Returns:
        True if a server was listening and received the signal.
    """
    config = config or get_lifecycle_config()
    client = ControlClient(config.lock_name, config.resolved_runtime_dir())
    return client.signal_shutdown()
