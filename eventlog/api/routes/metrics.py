"""
Aggregation operations for the query server.

aggregate_metrics computes count/sum/avg/min/max/stddev over the numeric
values at a payload field path (``price``, ``$.fill.price`` or
``payload.price``) across a run's events of one kind.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from eventlog.runtime.types import AGGREGATION_FUNCTIONS

from ..rpc import RpcContext, RpcRouter

router = RpcRouter(tags=["metrics"])


class AggregateMetricsRequest(BaseModel):
    run_id: str = Field(..., min_length=1)
    kind: str = Field(..., description="Event kind whose payloads are aggregated.")
    field_path: str = Field(..., min_length=1)
    aggregations: List[str] = Field(default_factory=lambda: list(AGGREGATION_FUNCTIONS))
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    @field_validator("aggregations")
    @classmethod
    def known_functions(cls, v: List[str]) -> List[str]:
        names = [name.strip().lower() for name in v]
        unknown = [name for name in names if name not in AGGREGATION_FUNCTIONS]
        if unknown:
            raise ValueError(
                f"Unknown aggregation(s) {unknown}; expected any of {list(AGGREGATION_FUNCTIONS)}"
            )
        return names or list(AGGREGATION_FUNCTIONS)


@router.method("aggregate_metrics", AggregateMetricsRequest)
def aggregate_metrics(ctx: RpcContext, request: AggregateMetricsRequest) -> Dict[str, Any]:
    """Aggregate a numeric payload field across events of one kind."""
    result = ctx.store.run(
        lambda engine, state: engine.aggregate(
            request.run_id,
            request.kind,
            request.field_path,
            functions=request.aggregations,
            start_time=request.start_time,
            end_time=request.end_time,
        )
    )
    return result.to_dict()
