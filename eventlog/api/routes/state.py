"""
State reconstruction operations for the query server.

Provides operations for:
- get_state_snapshot: positions, indicators, active orders and PnL as of
  a timestamp
- get_state_delta: how that state changed between two timestamps
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..rpc import RpcContext, RpcRouter

logger = logging.getLogger(__name__)

router = RpcRouter(tags=["state"])


# =============================================================================
# Pydantic Models
# =============================================================================


class StateSnapshotRequest(BaseModel):
    run_id: str = Field(..., min_length=1)
    timestamp: str = Field(..., description="Reconstruct state as of this time (inclusive).")
    security_symbol: Optional[str] = None
    include_indicators: bool = True
    include_active_orders: bool = True


class StateDeltaRequest(BaseModel):
    run_id: str = Field(..., min_length=1)
    start_time: str
    end_time: str
    security_symbol: Optional[str] = None


# =============================================================================
# Operations
# =============================================================================


@router.method("get_state_snapshot", StateSnapshotRequest)
def get_state_snapshot(ctx: RpcContext, request: StateSnapshotRequest) -> Dict[str, Any]:
    """Reconstruct positions, indicators, orders and PnL at a timestamp."""
    snapshot = ctx.store.run(
        lambda engine, state: state.snapshot(
            request.run_id,
            request.timestamp,
            security_symbol=request.security_symbol,
            include_indicators=request.include_indicators,
            include_active_orders=request.include_active_orders,
        )
    )
    return snapshot.to_dict(
        include_indicators=request.include_indicators,
        include_active_orders=request.include_active_orders,
    )


@router.method("get_state_delta", StateDeltaRequest)
def get_state_delta(ctx: RpcContext, request: StateDeltaRequest) -> Dict[str, Any]:
    """Compare reconstructed state between two timestamps."""
    delta = ctx.store.run(
        lambda engine, state: state.delta(
            request.run_id,
            request.start_time,
            request.end_time,
            security_symbol=request.security_symbol,
        )
    )
    logger.debug(
        "State delta for %s: %d position change(s)", request.run_id, len(delta.positions)
    )
    return delta.to_dict()
