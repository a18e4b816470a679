"""
control_channel.py - Named cross-process control channel for the query server.

The running server owns a named pipe ``<runtime_dir>/<name>.ctl`` and
blocks on it in its main loop. Other processes write one-line commands:

    shutdown            close the store and exit
    release             close the store connection, keep running
    reopen <path>       attach to the (possibly new) store at <path>

The server publishes its state to ``<name>.state.json`` after each command
so clients can wait for an acknowledgement. Opening the pipe for writing
fails with ENXIO when no server is reading, which is how a client learns
that no instance is running.

Usage:
    # Server side
    channel = ControlChannel(name, runtime_dir)
    channel.create()
    command = channel.wait(timeout=0.5)

    # Client side
    client = ControlClient(name, runtime_dir)
    if not client.signal_shutdown():
        print("no server running")
"""

from __future__ import annotations

import errno
import json
import logging
import os
import select
import stat
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

CMD_SHUTDOWN = "shutdown"
CMD_RELEASE = "release"
CMD_REOPEN = "reopen"


def _fifo_path(runtime_dir: Path, name: str) -> Path:
    return Path(runtime_dir) / f"{name}.ctl"


def _status_path(runtime_dir: Path, name: str) -> Path:
    return Path(runtime_dir) / f"{name}.state.json"


def read_status(name: str, runtime_dir: Path) -> Optional[Dict[str, Any]]:
    """Read the server's published state, or None if absent/unreadable."""
    try:
        with open(_status_path(runtime_dir, name)) as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class ControlChannel:
    """Server side of the control channel.

    Only the instance-lock holder creates the channel, so an existing pipe
    at the path is a leftover from a crashed server and is replaced.
    """

    def __init__(self, name: str, runtime_dir: Path):
        self.name = name
        self.runtime_dir = Path(runtime_dir)
        self._read_fd: Optional[int] = None
        self._keepalive_fd: Optional[int] = None
        self._pending = b""
        self._commands: Deque[str] = deque()
        self._status_seq = 0

    @property
    def fifo_path(self) -> Path:
        return _fifo_path(self.runtime_dir, self.name)

    @property
    def status_path(self) -> Path:
        return _status_path(self.runtime_dir, self.name)

    def create(self) -> None:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        if os.path.lexists(self.fifo_path):
            self.fifo_path.unlink()
        os.mkfifo(self.fifo_path, 0o600)
        self._read_fd = os.open(self.fifo_path, os.O_RDONLY | os.O_NONBLOCK)
        # Our own writer keeps the pipe from reporting EOF between clients
        self._keepalive_fd = os.open(self.fifo_path, os.O_WRONLY | os.O_NONBLOCK)
        logger.debug("Control channel listening on %s", self.fifo_path)

    def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block up to ``timeout`` seconds for the next command line."""
        if self._commands:
            return self._commands.popleft()
        if self._read_fd is None:
            raise RuntimeError("Control channel is not open")
        ready, _, _ = select.select([self._read_fd], [], [], timeout)
        if not ready:
            return None
        try:
            data = os.read(self._read_fd, 4096)
        except BlockingIOError:
            return None
        self._pending += data
        *lines, self._pending = self._pending.split(b"\n")
        for line in lines:
            command = line.decode("utf-8", errors="replace").strip()
            if command:
                self._commands.append(command)
        return self._commands.popleft() if self._commands else None

    def write_status(self, state: str, store_path: Optional[Path] = None, **extra: Any) -> None:
        """Publish server state atomically; each write bumps ``seq``."""
        self._status_seq += 1
        payload = {
            "pid": os.getpid(),
            "state": state,
            "store_path": str(store_path) if store_path is not None else None,
            "seq": self._status_seq,
            "updated_at": time.time(),
        }
        payload.update(extra)
        tmp = self.status_path.with_name(self.status_path.name + f".{os.getpid()}.tmp")
        tmp.write_text(json.dumps(payload))
        os.replace(tmp, self.status_path)

    def close(self) -> None:
        for fd in (self._read_fd, self._keepalive_fd):
            if fd is not None:
                os.close(fd)
        self._read_fd = None
        self._keepalive_fd = None
        for path in (self.fifo_path, self.status_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        logger.debug("Control channel %s closed", self.fifo_path)


class ControlClient:
    """Client side: sends commands to a running server."""

    def __init__(self, name: str, runtime_dir: Path):
        self.name = name
        self.runtime_dir = Path(runtime_dir)

    @property
    def fifo_path(self) -> Path:
        return _fifo_path(self.runtime_dir, self.name)

    def _open_writer(self) -> Optional[int]:
        try:
            if not stat.S_ISFIFO(os.stat(self.fifo_path).st_mode):
                return None
            return os.open(self.fifo_path, os.O_WRONLY | os.O_NONBLOCK)
        except FileNotFoundError:
            return None
        except OSError as e:
            if e.errno == errno.ENXIO:
                return None
            raise

    def is_listening(self) -> bool:
        """True if a server currently reads the channel."""
        fd = self._open_writer()
        if fd is None:
            return False
        os.close(fd)
        return True

    def send(self, command: str) -> bool:
        """Write one command line. Returns False when no server is listening."""
        fd = self._open_writer()
        if fd is None:
            logger.debug("No server listening on %s", self.fifo_path)
            return False
        try:
            os.write(fd, (command.strip() + "\n").encode("utf-8"))
        finally:
            os.close(fd)
        return True

    def signal_shutdown(self) -> bool:
        return self.send(CMD_SHUTDOWN)

    def request_release(self) -> bool:
        return self.send(CMD_RELEASE)

    def request_reopen(self, store_path: Path) -> bool:
        return self.send(f"{CMD_REOPEN} {store_path}")

    def read_status(self) -> Optional[Dict[str, Any]]:
        return read_status(self.name, self.runtime_dir)

    def status_seq(self) -> int:
        status = self.read_status()
        return int(status.get("seq", 0)) if status else 0

    def wait_for_status(
        self,
        predicate: Callable[[Dict[str, Any]], bool],
        timeout: float,
        interval: float = 0.05,
    ) -> Optional[Dict[str, Any]]:
        """Poll the status file until ``predicate`` holds or ``timeout`` passes."""
        deadline = time.monotonic() + timeout
        while True:
            status = self.read_status()
            if status is not None and predicate(status):
                return status
            if time.monotonic() >= deadline:
                return None
            time.sleep(interval)
