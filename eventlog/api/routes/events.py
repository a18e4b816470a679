"""
Event query operations for the query server.

Provides operations for:
- Filtering a run's events by kind, severity, category and time range
- Finding events that reference an entity (order, security, position, ...)
- Listing events that carry write-time validation issues

All operations page with page_index/page_size; page sizes are clamped to
the server's configured maximum.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..rpc import RpcContext, RpcRouter

logger = logging.getLogger(__name__)

router = RpcRouter(tags=["events"])


# =============================================================================
# Pydantic Models
# =============================================================================


class PagedRequest(BaseModel):
    """Paging parameters shared by list operations."""

    run_id: str = Field(..., min_length=1, description="Run to query.")
    page_index: int = Field(0, ge=0, description="Zero-based page number.")
    page_size: Optional[int] = Field(None, description="Events per page; clamped to the maximum.")


class EventsByKindRequest(PagedRequest):
    """Filtered event listing."""

    kind: Optional[str] = Field(None, description="Single event kind to include.")
    kinds: Optional[List[str]] = Field(None, description="Event kinds to include (any of).")
    severity: Optional[str] = None
    category: Optional[str] = None
    start_time: Optional[str] = Field(None, description="Inclusive ISO-8601 lower bound.")
    end_time: Optional[str] = Field(None, description="Inclusive ISO-8601 upper bound.")

    @field_validator("kind", "severity", "category", "start_time", "end_time")
    @classmethod
    def blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    def all_kinds(self) -> Optional[List[str]]:
        selected = list(self.kinds or [])
        if self.kind:
            selected.append(self.kind)
        return selected or None


class EventsByEntityRequest(PagedRequest):
    """Events whose payload references one entity."""

    entity_type: str = Field(
        ...,
        description=(
            "Payload key to match: order_id, security_symbol, position_id or "
            "indicator_name (PascalCase forms such as OrderId also accepted)."
        ),
    )
    entity_value: str = Field(..., min_length=1)
    kinds: Optional[List[str]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class ValidationErrorsRequest(PagedRequest):
    severity: Optional[str] = Field(None, description="Only issues of this severity.")


# =============================================================================
# Operations
# =============================================================================


@router.method("get_events_by_kind", EventsByKindRequest)
def get_events_by_kind(ctx: RpcContext, request: EventsByKindRequest) -> Dict[str, Any]:
    """Filter a run's events by kind, severity, category and time range."""
    page = ctx.store.run(
        lambda engine, state: engine.query_events(
            request.run_id,
            kinds=request.all_kinds(),
            severity=request.severity,
            category=request.category,
            start_time=request.start_time,
            end_time=request.end_time,
            page_index=request.page_index,
            page_size=request.page_size,
        )
    )
    return page.to_dict()


@router.method("get_events_by_entity", EventsByEntityRequest)
def get_events_by_entity(ctx: RpcContext, request: EventsByEntityRequest) -> Dict[str, Any]:
    """Find events whose payload references an entity."""
    page = ctx.store.run(
        lambda engine, state: engine.query_by_entity(
            request.run_id,
            request.entity_type,
            request.entity_value,
            kinds=request.kinds,
            start_time=request.start_time,
            end_time=request.end_time,
            page_index=request.page_index,
            page_size=request.page_size,
        )
    )
    return page.to_dict()


@router.method("get_validation_errors", ValidationErrorsRequest)
def get_validation_errors(ctx: RpcContext, request: ValidationErrorsRequest) -> Dict[str, Any]:
    """List events that carry write-time validation issues."""
    page = ctx.store.run(
        lambda engine, state: engine.query_validation_errors(
            request.run_id,
            severity=request.severity,
            page_index=request.page_index,
            page_size=request.page_size,
        )
    )
    return page.to_dict()
