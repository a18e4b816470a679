"""Runtime configuration registry for the event log store and query server.

Provides centralized configuration for the store path, ingestion batching,
query limits, lifecycle timeouts and cleanup retries.
Environment variables take precedence over YAML config.

Usage:
    from eventlog.config.runtime_config import get_store_path, get_query_limits

    path = get_store_path()  # Path("debug/events.db") unless overridden
    limits = get_query_limits()
    page_size = limits.clamp_page_size(requested)

Typed sections:
    from eventlog.config.runtime_config import (
        get_ingestion_config,
        get_lifecycle_config,
        get_cleanup_config,
    )

    ingestion = get_ingestion_config()  # batch_size=1000, flush_interval=30.0
    lifecycle = get_lifecycle_config()  # lock_name, runtime_dir, timeouts
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

# Environment overrides
ENV_DATABASE = "EVENTLOG_DATABASE"
ENV_RUNTIME_DIR = "EVENTLOG_RUNTIME_DIR"
ENV_LOG_LEVEL = "EVENTLOG_LOG_LEVEL"
ENV_BATCH_SIZE = "EVENTLOG_BATCH_SIZE"
ENV_FLUSH_INTERVAL = "EVENTLOG_FLUSH_INTERVAL"

DEFAULT_STORE_PATH = "debug/events.db"


# =============================================================================
# Typed Sections
# =============================================================================


@dataclass
class IngestionConfig:
    """Batching parameters for the ingestion pipeline."""

    batch_size: int = 1000
    flush_interval: float = 30.0
    close_flush_attempts: int = 3


@dataclass
class QueryLimits:
    """Paging and traversal limits applied to every query."""

    default_page_size: int = 100
    max_page_size: int = 1000
    default_max_depth: int = 10
    max_depth_cap: int = 100
    default_sequence_page_size: int = 50
    max_sequence_page_size: int = 100

    def clamp_page_size(self, page_size: Optional[int]) -> int:
        if page_size is None:
            return self.default_page_size
        return max(1, min(int(page_size), self.max_page_size))

    def clamp_max_depth(self, max_depth: Optional[int]) -> int:
        if max_depth is None:
            return self.default_max_depth
        return max(1, min(int(max_depth), self.max_depth_cap))

    def clamp_sequence_page_size(self, page_size: Optional[int]) -> int:
        if page_size is None:
            return self.default_sequence_page_size
        return max(1, min(int(page_size), self.max_sequence_page_size))


@dataclass
class LifecycleConfig:
    """Timeouts and names for the single-instance query server."""

    lock_name: str = "eventlog-query-server"
    runtime_dir: Optional[Path] = None
    startup_timeout: float = 10.0
    shutdown_timeout: float = 5.0
    reconnect_delay: float = 1.0
    watch_debounce: float = 0.5
    watch_poll_interval: float = 0.1

    def resolved_runtime_dir(self) -> Path:
        """Directory holding the lock, control channel and status files."""
        if self.runtime_dir is not None:
            return Path(self.runtime_dir)
        return Path(tempfile.gettempdir()) / "eventlog"


@dataclass
class CleanupConfig:
    """Retry policy for deleting a store and its journal files."""

    max_retries: int = 5
    retry_delay: float = 0.2


# =============================================================================
# Loading
# =============================================================================


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    config = _default_config()
    if _CONFIG_PATH.exists():
        try:
            with open(_CONFIG_PATH) as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.warning("Invalid runtime config %s, using defaults: %s", _CONFIG_PATH, e)
            loaded = None
        if isinstance(loaded, dict):
            for section, values in loaded.items():
                if isinstance(values, dict) and isinstance(config.get(section), dict):
                    config[section].update(values)
                else:
                    config[section] = values

    _cached_config = config
    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "store": {"path": DEFAULT_STORE_PATH, "busy_timeout_ms": 5000},
        "logging": {"level": "INFO"},
        "ingestion": {
            "batch_size": 1000,
            "flush_interval_seconds": 30,
            "close_flush_attempts": 3,
        },
        "query": {
            "default_page_size": 100,
            "max_page_size": 1000,
            "default_max_depth": 10,
            "max_depth_cap": 100,
            "default_sequence_page_size": 50,
            "max_sequence_page_size": 100,
        },
        "lifecycle": {
            "lock_name": "eventlog-query-server",
            "runtime_dir": "",
            "startup_timeout_seconds": 10,
            "shutdown_timeout_seconds": 5,
            "reconnect_delay_seconds": 1,
            "watch_debounce_ms": 500,
            "watch_poll_interval_ms": 100,
        },
        "cleanup": {"max_retries": 5, "retry_delay_ms": 200},
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _section(name: str) -> Dict[str, Any]:
    return _load_config().get(name) or {}


def _env_number(name: str, cast, fallback):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return fallback
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return fallback


# =============================================================================
# Accessors
# =============================================================================


def get_store_path() -> Path:
    """Get the store path, respecting the EVENTLOG_DATABASE override."""
    env_path = os.environ.get(ENV_DATABASE)
    if env_path:
        return Path(env_path)
    return Path(_section("store").get("path") or DEFAULT_STORE_PATH)


def get_busy_timeout_ms() -> int:
    """Milliseconds a connection waits on a locked store before failing."""
    return int(_section("store").get("busy_timeout_ms", 5000))


def get_log_level() -> str:
    """Get the log level name (EVENTLOG_LOG_LEVEL overrides config)."""
    level = os.environ.get(ENV_LOG_LEVEL) or _section("logging").get("level") or "INFO"
    return str(level).upper()


def get_ingestion_config() -> IngestionConfig:
    section = _section("ingestion")
    batch_size = _env_number(ENV_BATCH_SIZE, int, section.get("batch_size", 1000))
    flush_interval = _env_number(
        ENV_FLUSH_INTERVAL, float, section.get("flush_interval_seconds", 30)
    )
    return IngestionConfig(
        batch_size=max(1, int(batch_size)),
        flush_interval=max(0.01, float(flush_interval)),
        close_flush_attempts=max(1, int(section.get("close_flush_attempts", 3))),
    )


def get_query_limits() -> QueryLimits:
    section = _section("query")
    defaults = QueryLimits()
    return QueryLimits(
        default_page_size=int(section.get("default_page_size", defaults.default_page_size)),
        max_page_size=int(section.get("max_page_size", defaults.max_page_size)),
        default_max_depth=int(section.get("default_max_depth", defaults.default_max_depth)),
        max_depth_cap=int(section.get("max_depth_cap", defaults.max_depth_cap)),
        default_sequence_page_size=int(
            section.get("default_sequence_page_size", defaults.default_sequence_page_size)
        ),
        max_sequence_page_size=int(
            section.get("max_sequence_page_size", defaults.max_sequence_page_size)
        ),
    )


def get_lifecycle_config() -> LifecycleConfig:
    """Get lifecycle settings (EVENTLOG_RUNTIME_DIR overrides runtime_dir)."""
    section = _section("lifecycle")
    runtime_dir = os.environ.get(ENV_RUNTIME_DIR) or section.get("runtime_dir") or None
    return LifecycleConfig(
        lock_name=str(section.get("lock_name") or "eventlog-query-server"),
        runtime_dir=Path(runtime_dir) if runtime_dir else None,
        startup_timeout=float(section.get("startup_timeout_seconds", 10)),
        shutdown_timeout=float(section.get("shutdown_timeout_seconds", 5)),
        reconnect_delay=float(section.get("reconnect_delay_seconds", 1)),
        watch_debounce=float(section.get("watch_debounce_ms", 500)) / 1000.0,
        watch_poll_interval=float(section.get("watch_poll_interval_ms", 100)) / 1000.0,
    )


def get_cleanup_config() -> CleanupConfig:
    section = _section("cleanup")
    return CleanupConfig(
        max_retries=max(1, int(section.get("max_retries", 5))),
        retry_delay=float(section.get("retry_delay_ms", 200)) / 1000.0,
    )
