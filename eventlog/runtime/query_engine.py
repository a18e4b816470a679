"""
query_engine.py - Read operations over the event store.

Provides the query side of the debug event log:
- Filtered scans (kind, severity, category, time range) with paging
- Entity-reference scans (order id, security symbol, position id,
  indicator name matched inside the payload)
- Causal-chain traversal from a root event, or discovery of all root
  events and one chain per root, checked against an expected-kind pattern
- Numeric aggregation of a payload field (count/sum/avg/min/max/stddev)
- Events carrying write-time validation issues

Design Philosophy:
    - Invalid parameters raise QueryValidationError before touching the store
    - Page sizes and traversal depth are clamped to configured caps
    - Ordering is always timestamp ascending, ties broken by sequence id
    - Chain traversal is an explicit breadth-first worklist with a depth
      counter; the depth cap is the only guard against malformed cycles
    - Every result reports its own elapsed query time

Usage:
    from eventlog.runtime.query_engine import QueryEngine

    engine = QueryEngine(store)
    page = engine.query_events(run_id, kinds=["trade_execution"], page_size=50)
    chain = engine.query_chain(run_id, order_event_id, max_depth=2)
    stats = engine.aggregate(run_id, "trade_execution", "price", ["avg", "stddev"])
"""

from __future__ import annotations

import logging
import math
import re
import statistics
import time
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from eventlog.config.runtime_config import QueryLimits, get_query_limits

from .db import EVENT_COLUMNS, EventStore
from .types import (
    AGGREGATION_FUNCTIONS,
    AggregationResult,
    EventChain,
    EventKind,
    EventPage,
    EventRecord,
    QueryMetadata,
    QueryValidationError,
    SequencePage,
    _to_store_ts,
    page_metadata,
    parse_category,
    parse_entity_type,
    parse_event_kind,
    parse_severity,
)
from .types._time import TimestampLike

logger = logging.getLogger(__name__)

FIELD_PATH_PATTERN = re.compile(r"^\$\.[A-Za-z0-9_.]+$")

# Parent ids per IN (...) clause during chain traversal
_IN_CHUNK = 500


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


def normalize_field_path(field_path: str) -> str:
    """Normalize a payload field path to ``$.a.b`` form.

    Accepts ``price``, ``$.price`` and ``payload.price``.

    Raises:
        QueryValidationError: If the path has disallowed characters or
            empty segments.
    """
    path = (field_path or "").strip()
    if path.startswith("payload."):
        path = path[len("payload."):]
    if not path.startswith("$."):
        path = "$." + path.lstrip("$")
    if not FIELD_PATH_PATTERN.match(path) or ".." in path or path.endswith("."):
        raise QueryValidationError(
            f"Invalid field path '{field_path}': use dotted names such as 'price' or '$.fill.price'"
        )
    return path


def _parse_kinds(kinds: Optional[Iterable[Any]]) -> List[EventKind]:
    if kinds is None:
        return []
    if isinstance(kinds, (str, EventKind)):
        kinds = [kinds]
    parsed: List[EventKind] = []
    for kind in kinds:
        try:
            value = parse_event_kind(kind)
        except ValueError as e:
            raise QueryValidationError(str(e)) from None
        if value not in parsed:
            parsed.append(value)
    return parsed


def _time_range(
    start_time: Optional[TimestampLike], end_time: Optional[TimestampLike]
) -> Tuple[Optional[str], Optional[str]]:
    try:
        start = _to_store_ts(start_time)
        end = _to_store_ts(end_time)
    except (AttributeError, TypeError, ValueError) as e:
        raise QueryValidationError(f"Malformed timestamp: {e}") from None
    if start is not None and end is not None and start > end:
        raise QueryValidationError(f"Invalid time range: start {start} is after end {end}")
    return start, end


class _Where:
    """Accumulates SQL predicates and their parameters."""

    def __init__(self, run_id: str):
        self.clauses: List[str] = ["run_id = ?"]
        self.params: List[Any] = [run_id]

    def add(self, clause: str, *params: Any) -> None:
        self.clauses.append(clause)
        self.params.extend(params)

    def add_kinds(self, kinds: Sequence[EventKind]) -> None:
        if kinds:
            marks = ", ".join("?" for _ in kinds)
            self.add(f"kind IN ({marks})", *[k.value for k in kinds])

    def add_time_range(self, start: Optional[str], end: Optional[str]) -> None:
        if start is not None:
            self.add("ts >= ?", start)
        if end is not None:
            self.add("ts <= ?", end)

    @property
    def sql(self) -> str:
        return " AND ".join(self.clauses)


class QueryEngine:
    """Read-only query operations against one EventStore.

    Attributes:
        store: The store queried.
        limits: Paging and depth caps.
    """

    def __init__(self, store: EventStore, limits: Optional[QueryLimits] = None):
        self.store = store
        self.limits = limits or get_query_limits()

    # =========================================================================
    # Paging
    # =========================================================================

    def _page(
        self, where: _Where, page_index: int, page_size: Optional[int], started: float
    ) -> EventPage:
        page_index = max(0, int(page_index or 0))
        size = self.limits.clamp_page_size(page_size)
        total = int(self.store.fetch_scalar(f"SELECT COUNT(*) FROM events WHERE {where.sql}", where.params))
        events = self.store.fetch_events(
            f"SELECT {EVENT_COLUMNS} FROM events WHERE {where.sql} "
            "ORDER BY ts, seq LIMIT ? OFFSET ?",
            list(where.params) + [size, page_index * size],
        )
        metadata = page_metadata(page_index, size, len(events), total)
        metadata.query_time_ms = _elapsed_ms(started)
        return EventPage(events=events, metadata=metadata)

    # =========================================================================
    # Filtered Query
    # =========================================================================

    def query_events(
        self,
        run_id: str,
        kinds: Optional[Iterable[Any]] = None,
        severity: Optional[Any] = None,
        category: Optional[Any] = None,
        start_time: Optional[TimestampLike] = None,
        end_time: Optional[TimestampLike] = None,
        page_index: int = 0,
        page_size: Optional[int] = None,
    ) -> EventPage:
        """Page through a run's events matching optional filters.

        Args:
            run_id: Run to scan.
            kinds: Event kinds to include (any of). None means all kinds.
            severity: Exact severity to match.
            category: Exact category to match.
            start_time: Inclusive lower time bound.
            end_time: Inclusive upper time bound.
            page_index: Zero-based page number.
            page_size: Events per page (default 100, capped at 1000).

        Raises:
            QueryValidationError: For unknown enum values or a bad time range.
        """
        started = time.perf_counter()
        where = _Where(run_id)
        where.add_kinds(_parse_kinds(kinds))
        try:
            if severity is not None:
                where.add("severity = ?", parse_severity(severity).value)
            if category is not None:
                where.add("category = ?", parse_category(category).value)
        except ValueError as e:
            raise QueryValidationError(str(e)) from None
        where.add_time_range(*_time_range(start_time, end_time))
        return self._page(where, page_index, page_size, started)

    # =========================================================================
    # Entity-Reference Query
    # =========================================================================

    def query_by_entity(
        self,
        run_id: str,
        entity_type: Any,
        entity_value: Any,
        kinds: Optional[Iterable[Any]] = None,
        start_time: Optional[TimestampLike] = None,
        end_time: Optional[TimestampLike] = None,
        page_index: int = 0,
        page_size: Optional[int] = None,
    ) -> EventPage:
        """Page through events whose payload field for ``entity_type`` equals ``entity_value``.

        Raises:
            QueryValidationError: For an unknown entity type or kind, or an
                empty entity value.
        """
        started = time.perf_counter()
        try:
            entity = parse_entity_type(entity_type)
        except ValueError as e:
            raise QueryValidationError(str(e)) from None
        if entity_value is None or str(entity_value) == "":
            raise QueryValidationError("entity_value must be a non-empty value")

        where = _Where(run_id)
        # Path literal comes from the closed EntityType set and matches the
        # expression indexes defined in the schema
        extract = f"json_extract(payload, '$.{entity.value}')"
        where.add(
            f"({extract} = ? OR CAST({extract} AS TEXT) = ?)",
            entity_value,
            str(entity_value),
        )
        where.add_kinds(_parse_kinds(kinds))
        where.add_time_range(*_time_range(start_time, end_time))
        return self._page(where, page_index, page_size, started)

    # =========================================================================
    # Causal Chains
    # =========================================================================

    def _children_of(self, run_id: str, parent_ids: Sequence[str]) -> List[EventRecord]:
        children: List[EventRecord] = []
        for offset in range(0, len(parent_ids), _IN_CHUNK):
            chunk = list(parent_ids[offset : offset + _IN_CHUNK])
            marks = ", ".join("?" for _ in chunk)
            children.extend(
                self.store.fetch_events(
                    f"SELECT {EVENT_COLUMNS} FROM events "
                    f"WHERE run_id = ? AND parent_event_id IN ({marks}) ORDER BY ts, seq",
                    [run_id] + chunk,
                )
            )
        return children

    def _build_chain(
        self, run_id: str, root: EventRecord, max_depth: int, pattern: Sequence[EventKind]
    ) -> EventChain:
        seen = {root.event_id}
        collected: List[EventRecord] = []
        frontier = [root.event_id]
        depth = 0
        depth_reached = 0
        while frontier and depth < max_depth:
            depth += 1
            next_frontier: List[str] = []
            for child in self._children_of(run_id, frontier):
                if child.event_id in seen:
                    continue
                seen.add(child.event_id)
                collected.append(child)
                next_frontier.append(child.event_id)
            if next_frontier:
                depth_reached = depth
            frontier = next_frontier

        collected.sort(key=lambda e: (e.timestamp, e.seq or 0))
        chain = EventChain(root=root, events=collected, depth_reached=depth_reached)
        present = set(chain.kinds())
        chain.missing_kinds = [k for k in pattern if k not in present]
        chain.complete = not chain.missing_kinds
        return chain

    def query_chain(
        self,
        run_id: str,
        root_event_id: str,
        max_depth: Optional[int] = None,
        expected_pattern: Optional[Iterable[Any]] = None,
    ) -> EventChain:
        """Traverse descendants of ``root_event_id`` up to ``max_depth`` levels.

        A root absent from the run yields a not-found chain (``root`` is None,
        no events) rather than an error.
        """
        pattern = _parse_kinds(expected_pattern)
        depth = self.limits.clamp_max_depth(max_depth)
        root = self.store.get_event(root_event_id, run_id=run_id)
        if root is None:
            logger.debug("Chain root %s not found in run %s", root_event_id, run_id)
            return EventChain(root=None, complete=False, missing_kinds=list(pattern))
        return self._build_chain(run_id, root, depth, pattern)

    def query_sequences(
        self,
        run_id: str,
        root_event_id: Optional[str] = None,
        pattern: Optional[Iterable[Any]] = None,
        root_kind: Optional[Any] = None,
        include_incomplete: bool = False,
        max_depth: Optional[int] = None,
        page_index: int = 0,
        page_size: Optional[int] = None,
    ) -> SequencePage:
        """Return causal chains, by explicit root or by discovering roots.

        With ``root_event_id`` the single chain is returned whether or not it
        matches the pattern. Otherwise every event without a parent (of
        ``root_kind``, defaulting to the pattern's first kind) is a root, and
        chains missing pattern kinds are dropped unless ``include_incomplete``.
        """
        started = time.perf_counter()
        kinds = _parse_kinds(pattern)
        depth = self.limits.clamp_max_depth(max_depth)
        page_index = max(0, int(page_index or 0))
        size = self.limits.clamp_sequence_page_size(page_size)

        if root_event_id:
            chain = self.query_chain(run_id, root_event_id, depth, kinds)
            sequences = [chain] if chain.found else []
            metadata = QueryMetadata(
                page_index=0,
                page_size=size,
                returned_count=len(sequences),
                total_sequences=len(sequences),
                has_more=False,
            )
            metadata.query_time_ms = _elapsed_ms(started)
            return SequencePage(sequences=sequences, metadata=metadata)

        where = _Where(run_id)
        where.add("parent_event_id IS NULL")
        if root_kind is not None:
            where.add_kinds(_parse_kinds([root_kind]))
        elif kinds:
            where.add_kinds(kinds[:1])

        if include_incomplete or not kinds:
            total = int(
                self.store.fetch_scalar(f"SELECT COUNT(*) FROM events WHERE {where.sql}", where.params)
            )
            roots = self.store.fetch_events(
                f"SELECT {EVENT_COLUMNS} FROM events WHERE {where.sql} "
                "ORDER BY ts, seq LIMIT ? OFFSET ?",
                list(where.params) + [size, page_index * size],
            )
            sequences = [self._build_chain(run_id, r, depth, kinds) for r in roots]
        else:
            roots = self.store.fetch_events(
                f"SELECT {EVENT_COLUMNS} FROM events WHERE {where.sql} ORDER BY ts, seq",
                where.params,
            )
            matching = [
                chain
                for chain in (self._build_chain(run_id, r, depth, kinds) for r in roots)
                if chain.complete
            ]
            total = len(matching)
            sequences = matching[page_index * size : (page_index + 1) * size]

        metadata = QueryMetadata(
            page_index=page_index,
            page_size=size,
            returned_count=len(sequences),
            total_sequences=total,
            has_more=(page_index + 1) * size < total,
        )
        metadata.query_time_ms = _elapsed_ms(started)
        return SequencePage(sequences=sequences, metadata=metadata)

    # =========================================================================
    # Aggregation
    # =========================================================================

    def aggregate(
        self,
        run_id: str,
        kind: Any,
        field_path: str,
        functions: Optional[Iterable[str]] = None,
        start_time: Optional[TimestampLike] = None,
        end_time: Optional[TimestampLike] = None,
    ) -> AggregationResult:
        """Aggregate the numeric values at ``field_path`` across events of ``kind``.

        ``count`` is the number of matching events holding a numeric value at
        the path; events with a missing or non-numeric value are excluded from
        every aggregate and only appear in ``total_events``. The count of every
        matching event, numeric or not, is returned as ``metadata.total_events``
        (also ``metadata.total_count``). ``stddev`` is the population standard
        deviation.

        Raises:
            QueryValidationError: For an unknown kind or function, a malformed
                field path, or a bad time range.
        """
        started = time.perf_counter()
        kinds = _parse_kinds([kind])
        path = normalize_field_path(field_path)
        requested = [f.lower() for f in (functions or AGGREGATION_FUNCTIONS)]
        unknown = [f for f in requested if f not in AGGREGATION_FUNCTIONS]
        if unknown:
            raise QueryValidationError(
                f"Unknown aggregation function(s) {unknown}. Valid: {', '.join(AGGREGATION_FUNCTIONS)}"
            )

        where = _Where(run_id)
        where.add_kinds(kinds)
        where.add_time_range(*_time_range(start_time, end_time))

        total_events = int(
            self.store.fetch_scalar(f"SELECT COUNT(*) FROM events WHERE {where.sql}", where.params)
        )
        rows = self.store.fetch_rows(
            f"SELECT json_extract(payload, ?) AS v FROM events "
            f"WHERE {where.sql} AND json_type(payload, ?) IN ('integer', 'real')",
            [path] + list(where.params) + [path],
        )
        values = [float(row["v"]) for row in rows]

        total = math.fsum(values)
        computed = {
            "count": len(values),
            "sum": total,
            "avg": total / len(values) if values else None,
            "min": min(values) if values else None,
            "max": max(values) if values else None,
            "stddev": statistics.pstdev(values) if values else None,
        }
        result = AggregationResult(
            kind=kinds[0],
            field_path=path,
            values={f: computed[f] for f in requested},
            total_events=total_events,
            metadata=QueryMetadata(
                page_index=0,
                page_size=1,
                returned_count=1,
                total_count=total_events,
                has_more=False,
            ),
        )
        result.metadata.query_time_ms = _elapsed_ms(started)
        return result

    # =========================================================================
    # Validation Issues
    # =========================================================================

    def query_validation_errors(
        self,
        run_id: str,
        severity: Optional[str] = None,
        page_index: int = 0,
        page_size: Optional[int] = None,
    ) -> EventPage:
        """Page through events that carry write-time validation issues.

        Args:
            severity: Only events with at least one issue of this severity
                ("error" or "warning").
        """
        started = time.perf_counter()
        where = _Where(run_id)
        where.add("validation_errors IS NOT NULL")
        if severity is not None:
            level = str(severity).lower()
            if level not in ("error", "warning"):
                raise QueryValidationError(
                    f"Unknown issue severity '{severity}'. Valid values: error, warning"
                )
            where.add(
                "EXISTS (SELECT 1 FROM json_each(events.validation_errors) "
                "WHERE json_extract(json_each.value, '$.severity') = ?)",
                level,
            )
        return self._page(where, page_index, page_size, started)
