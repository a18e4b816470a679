"""
Run listing and health operations for the query server.

Provides operations for:
- Listing runs recorded in the current store
- Reporting server and store health
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..rpc import EmptyRequest, RpcContext, RpcRouter

logger = logging.getLogger(__name__)

router = RpcRouter(tags=["runs"])


# =============================================================================
# Pydantic Models
# =============================================================================


class RunSummary(BaseModel):
    """One run recorded in the store."""

    run_id: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    config_hash: Optional[str] = None
    created_at: Optional[str] = None
    event_count: int = 0


class ListRunsResponse(BaseModel):
    runs: List[RunSummary] = Field(default_factory=list)
    total: int = 0


class HealthResponse(BaseModel):
    """Server lifecycle state plus store connection health."""

    status: str
    store: Dict[str, Any]


# =============================================================================
# Operations
# =============================================================================


@router.method("list_runs", EmptyRequest)
def list_runs(ctx: RpcContext, request: EmptyRequest) -> Dict[str, Any]:
    """List runs in the store, newest first."""
    runs = ctx.store.run(lambda engine, state: engine.store.list_runs())
    summaries = [RunSummary(**run.to_dict()) for run in runs]
    return ListRunsResponse(runs=summaries, total=len(summaries)).model_dump(exclude_none=True)


@router.method("health", EmptyRequest)
def health(ctx: RpcContext, request: EmptyRequest) -> Dict[str, Any]:
    """Report lifecycle state and store health."""
    status = ctx.store.check_health()
    return HealthResponse(status=ctx.status(), store=status.to_dict()).model_dump()
