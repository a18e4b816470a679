"""Query result types and query errors.

Every read operation reports a QueryMetadata block with paging
information and its own elapsed time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .events import EventKind, EventRecord


class QueryValidationError(ValueError):
    """A query parameter was rejected; no partial result is produced."""


@dataclass
class QueryMetadata:
    """Paging and timing information attached to every query result."""

    page_index: int = 0
    page_size: int = 0
    returned_count: int = 0
    total_count: Optional[int] = None
    total_sequences: Optional[int] = None
    has_more: bool = False
    query_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "page_index": self.page_index,
            "page_size": self.page_size,
            "returned_count": self.returned_count,
            "has_more": self.has_more,
            "query_time_ms": round(self.query_time_ms, 3),
        }
        if self.total_count is not None:
            result["total_count"] = self.total_count
        if self.total_sequences is not None:
            result["total_sequences"] = self.total_sequences
        return result


def page_metadata(page_index: int, page_size: int, returned: int, total: int) -> QueryMetadata:
    """Metadata for a page of ``returned`` items out of ``total``."""
    return QueryMetadata(
        page_index=page_index,
        page_size=page_size,
        returned_count=returned,
        total_count=total,
        has_more=(page_index + 1) * page_size < total,
    )


@dataclass
class EventPage:
    events: List[EventRecord] = field(default_factory=list)
    metadata: QueryMetadata = field(default_factory=QueryMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class EventChain:
    """A root event and its descendants up to a depth cap.

    Attributes:
        root: The root event, or None when the root was not found.
        events: Descendants (depth 1..max_depth) ordered by timestamp.
        depth_reached: Deepest level that produced at least one event.
        complete: True when the chain's kinds cover the expected pattern.
        missing_kinds: Pattern kinds absent from the chain.
    """

    root: Optional[EventRecord] = None
    events: List[EventRecord] = field(default_factory=list)
    depth_reached: int = 0
    complete: bool = True
    missing_kinds: List[EventKind] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.root is not None

    def kinds(self) -> List[EventKind]:
        """Distinct kinds over the root and its descendants, in first-seen order."""
        seen: List[EventKind] = []
        for event in ([self.root] if self.root else []) + self.events:
            if event.kind not in seen:
                seen.append(event.kind)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root.to_dict() if self.root else None,
            "events": [e.to_dict() for e in self.events],
            "depth_reached": self.depth_reached,
            "complete": self.complete,
            "missing_kinds": [k.value for k in self.missing_kinds],
        }


@dataclass
class SequencePage:
    """Result of a causal-chain query (single root or discovered roots)."""

    sequences: List[EventChain] = field(default_factory=list)
    metadata: QueryMetadata = field(default_factory=QueryMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequences": [s.to_dict() for s in self.sequences],
            "metadata": self.metadata.to_dict(),
        }


AGGREGATION_FUNCTIONS = ("count", "sum", "avg", "min", "max", "stddev")


@dataclass
class AggregationResult:
    """Numeric aggregates of one payload field across matching events.

    ``values`` holds only the requested functions; ``total_events`` counts all
    matching events whether or not they carry a numeric value at the path.
    """

    kind: EventKind
    field_path: str
    values: Dict[str, Optional[float]] = field(default_factory=dict)
    total_events: int = 0
    metadata: QueryMetadata = field(default_factory=QueryMetadata)

    def to_dict(self) -> Dict[str, Any]:
        metadata = self.metadata.to_dict()
        metadata["total_events"] = self.total_events
        return {
            "kind": self.kind.value,
            "field_path": self.field_path,
            "aggregations": dict(self.values),
            "metadata": metadata,
        }
