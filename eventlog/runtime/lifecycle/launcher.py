"""
launcher.py - Spawning the query server as a detached process.

The server must outlive the producer that starts it, so it is spawned in
its own session (POSIX) or as a detached process group (Windows), with
stdin closed and output appended to a log file in the runtime directory.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

SERVER_MODULE = "eventlog.api.server"


def server_command(store_path: Path) -> List[str]:
    """Command line that starts a query server for ``store_path``."""
    return [sys.executable, "-m", SERVER_MODULE, "--database", str(store_path)]


def spawn_detached(
    executable: str,
    args: Sequence[str] = (),
    log_path: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
) -> subprocess.Popen:
    """Start ``executable`` with ``args`` so it survives this process exiting.

    Args:
        executable: Program to run.
        args: Arguments after the program.
        log_path: File receiving the child's stdout and stderr (appended).
            None discards output.
        env: Environment for the child (defaults to ours).
        cwd: Working directory for the child.

    Returns:
        The Popen handle (the caller need not wait on it).
    """
    kwargs: Dict[str, object] = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        )
    else:
        kwargs["start_new_session"] = True

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        output = open(log_path, "ab")
    else:
        output = subprocess.DEVNULL

    try:
        process = subprocess.Popen(
            [executable, *args],
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=output,
            env=env if env is not None else os.environ.copy(),
            cwd=str(cwd) if cwd is not None else None,
            close_fds=True,
            **kwargs,
        )
    finally:
        if log_path is not None:
            output.close()

    logger.info("Spawned detached process pid=%d: %s %s", process.pid, executable, " ".join(args))
    return process
