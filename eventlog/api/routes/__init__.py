"""
Routes package for the event log query server.

This package contains the RPC routers for:
- runs: run listing and health
- events: filtered, entity and validation-issue event queries
- sequences: causal-chain queries
- metrics: numeric aggregation of payload fields
- state: state snapshots and deltas
"""

from .events import router as events_router
from .metrics import router as metrics_router
from .runs import router as runs_router
from .sequences import router as sequences_router
from .state import router as state_router

ALL_ROUTERS = [runs_router, events_router, sequences_router, metrics_router, state_router]

__all__ = [
    "ALL_ROUTERS",
    "events_router",
    "metrics_router",
    "runs_router",
    "sequences_router",
    "state_router",
]
