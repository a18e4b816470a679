"""
Causal-chain operations for the query server.

query_event_sequences either expands one explicit root event into its
descendant chain, or discovers root events (no parent) and returns the
chains that cover the expected kind pattern.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..rpc import RpcContext, RpcRouter

router = RpcRouter(tags=["sequences"])


class EventSequencesRequest(BaseModel):
    """Parameters for a causal-chain query."""

    run_id: str = Field(..., min_length=1)
    root_event_id: Optional[str] = Field(None, description="Expand this event's chain only.")
    sequence_pattern: List[str] = Field(
        default_factory=list, description="Event kinds a complete chain must contain."
    )
    root_kind: Optional[str] = Field(None, description="Kind of discovered roots.")
    include_incomplete: bool = False
    max_depth: Optional[int] = Field(None, description="Descendant depth; clamped to the maximum.")
    page_index: int = Field(0, ge=0)
    page_size: Optional[int] = None

    @model_validator(mode="after")
    def require_root_or_pattern(self) -> "EventSequencesRequest":
        if not self.root_event_id and not self.sequence_pattern and not self.root_kind:
            raise ValueError("root_event_id, sequence_pattern or root_kind is required")
        return self


@router.method("query_event_sequences", EventSequencesRequest)
def query_event_sequences(ctx: RpcContext, request: EventSequencesRequest) -> Dict[str, Any]:
    """Return causal chains by explicit root or by discovered roots."""
    page = ctx.store.run(
        lambda engine, state: engine.query_sequences(
            request.run_id,
            root_event_id=request.root_event_id,
            pattern=request.sequence_pattern,
            root_kind=request.root_kind,
            include_incomplete=request.include_incomplete,
            max_depth=request.max_depth,
            page_index=request.page_index,
            page_size=request.page_size,
        )
    )
    return page.to_dict()
