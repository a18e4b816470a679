# eventlog/runtime/lifecycle package
# Keeps exactly one query-server process alive per machine and reconnects it
# when the producer replaces the store between runs.
#
# Core components:
#   - instance_lock: named OS file lock (single instance)
#   - control_channel: named pipe carrying shutdown/release/reopen commands
#   - launcher: detached process spawning
#   - file_watcher: debounced store replacement detection
#   - manager: producer-side state machine (ensure_running, shutdown, ...)
#
# Usage:
#     from eventlog.runtime.lifecycle import LifecycleManager
#     manager = LifecycleManager(store_path)
#     manager.ensure_running()

from .control_channel import ControlChannel, ControlClient, read_status
from .file_watcher import StoreFileWatcher, file_identity
from .instance_lock import InstanceLock
from .launcher import server_command, spawn_detached
from .manager import (
    ALLOWED_TRANSITIONS,
    LifecycleError,
    LifecycleManager,
    LifecycleState,
    signal_shutdown,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ControlChannel",
    "ControlClient",
    "InstanceLock",
    "LifecycleError",
    "LifecycleManager",
    "LifecycleState",
    "StoreFileWatcher",
    "file_identity",
    "read_status",
    "server_command",
    "signal_shutdown",
    "spawn_detached",
]
