"""
snapshot.py - Point-in-time state reconstruction from the event log.

Derives, for a timestamp T, the state a run had reached:
- positions: latest position_update per security with ts <= T
- indicators: latest indicator_calculation per (indicator, security)
- active orders: orders placed and not terminally resolved by T
- P&L: realized and unrealized totals

A state delta computes two independent snapshots and subtracts them
field by field.

Design Philosophy:
    - Only terminal-resolution events close an order: a complete fill, a
      rejection, or a filled/cancelled/rejected/expired status change.
      Intent-to-close statuses (closing, cancel_requested, ...) leave the
      order active.
    - "Latest" means greatest (timestamp, sequence id), so events sharing a
      timestamp resolve in write order.

Usage:
    from eventlog.runtime.snapshot import StateReconstructor

    state = StateReconstructor(store)
    snap = state.snapshot(run_id, "2024-01-02T10:00:00Z", security_symbol="AAPL")
    delta = state.delta(run_id, t1, t2)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from .db import EVENT_COLUMNS, EventStore
from .types import (
    ActiveOrder,
    EventKind,
    EventRecord,
    FieldChange,
    IndicatorDelta,
    IndicatorState,
    PnLState,
    PositionDelta,
    PositionState,
    QueryMetadata,
    QueryValidationError,
    StateDelta,
    StateSnapshot,
    _to_store_ts,
)
from .types._time import TimestampLike

logger = logging.getLogger(__name__)

OPEN_ORDER_STATUSES = frozenset(
    {"placed", "submitted", "new", "active", "pending", "partially_filled", "registered"}
)

TERMINAL_ORDER_STATUSES = frozenset(
    {"filled", "cancelled", "canceled", "rejected", "expired"}
)

PNL_STATE_TYPE = "pnl"

_LATEST_PER_KEY_SQL = """
SELECT {columns} FROM (
    SELECT events.*, ROW_NUMBER() OVER (
        PARTITION BY {partition}
        ORDER BY ts DESC, seq DESC
    ) AS rn
    FROM events
    WHERE run_id = ? AND kind = ? AND ts <= ? {extra}
) WHERE rn = 1
ORDER BY ts, seq
"""


def _number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _snapshot_ts(value: Optional[TimestampLike], name: str) -> str:
    if value is None or value == "":
        raise QueryValidationError(f"{name} is required")
    try:
        return _to_store_ts(value)
    except (AttributeError, TypeError, ValueError) as e:
        raise QueryValidationError(f"Malformed {name}: {e}") from None


class StateReconstructor:
    """Computes snapshots and deltas over one EventStore."""

    def __init__(self, store: EventStore):
        self.store = store

    def _latest_per_key(
        self,
        run_id: str,
        kind: EventKind,
        timestamp: str,
        partition: str,
        security_symbol: Optional[str],
        require: str,
    ) -> List[EventRecord]:
        extra = f"AND {require} IS NOT NULL"
        params: List[Any] = [run_id, kind.value, timestamp]
        if security_symbol is not None:
            extra += " AND json_extract(payload, '$.security_symbol') = ?"
            params.append(security_symbol)
        sql = _LATEST_PER_KEY_SQL.format(columns=EVENT_COLUMNS, partition=partition, extra=extra)
        return self.store.fetch_events(sql, params)

    def _positions(
        self, run_id: str, timestamp: str, security_symbol: Optional[str]
    ) -> Dict[str, PositionState]:
        positions: Dict[str, PositionState] = {}
        for event in self._latest_per_key(
            run_id,
            EventKind.POSITION_UPDATE,
            timestamp,
            partition="json_extract(payload, '$.security_symbol')",
            security_symbol=security_symbol,
            require="json_extract(payload, '$.security_symbol')",
        ):
            payload = event.payload
            symbol = str(payload["security_symbol"])
            positions[symbol] = PositionState(
                security_symbol=symbol,
                quantity=_number(payload.get("quantity")),
                average_price=_number(payload.get("average_price")),
                realized_pnl=_number(payload.get("realized_pnl")),
                unrealized_pnl=_number(payload.get("unrealized_pnl")),
                last_update=event.timestamp,
                event_id=event.event_id,
            )
        return positions

    def _indicators(
        self, run_id: str, timestamp: str, security_symbol: Optional[str]
    ) -> Dict[str, IndicatorState]:
        indicators: Dict[str, IndicatorState] = {}
        for event in self._latest_per_key(
            run_id,
            EventKind.INDICATOR_CALCULATION,
            timestamp,
            partition=(
                "json_extract(payload, '$.indicator_name'), "
                "COALESCE(json_extract(payload, '$.security_symbol'), '')"
            ),
            security_symbol=security_symbol,
            require="json_extract(payload, '$.indicator_name')",
        ):
            payload = event.payload
            value = payload.get("value")
            state = IndicatorState(
                indicator_name=str(payload["indicator_name"]),
                security_symbol=payload.get("security_symbol"),
                value=None if value is None else _number(value),
                last_update=event.timestamp,
                event_id=event.event_id,
            )
            indicators[state.key] = state
        return indicators

    def _active_orders(
        self, run_id: str, timestamp: str, security_symbol: Optional[str]
    ) -> Dict[str, ActiveOrder]:
        events = self.store.fetch_events(
            f"SELECT {EVENT_COLUMNS} FROM events "
            "WHERE run_id = ? AND ts <= ? AND kind IN (?, ?, ?) "
            "AND json_extract(payload, '$.order_id') IS NOT NULL "
            "ORDER BY ts, seq",
            [
                run_id,
                timestamp,
                EventKind.STATE_CHANGE.value,
                EventKind.TRADE_EXECUTION.value,
                EventKind.ORDER_REJECTION.value,
            ],
        )
        orders: Dict[str, ActiveOrder] = {}
        for event in events:
            payload = event.payload
            order_id = str(payload["order_id"])
            symbol = payload.get("security_symbol")

            if event.kind == EventKind.ORDER_REJECTION:
                orders.pop(order_id, None)
                continue

            if event.kind == EventKind.TRADE_EXECUTION:
                remaining = payload.get("remaining_quantity")
                if remaining is None or _number(remaining) <= 0:
                    orders.pop(order_id, None)
                    continue
                order = orders.get(order_id)
                if order is None:
                    order = orders[order_id] = ActiveOrder(
                        order_id=order_id, security_symbol=symbol, placed_at=event.timestamp
                    )
                order.status = "partially_filled"
                order.filled_quantity += _number(payload.get("quantity"))
                order.last_update = event.timestamp
                continue

            status = str(payload.get("order_status") or "").lower()
            if status in TERMINAL_ORDER_STATUSES:
                orders.pop(order_id, None)
            elif status in OPEN_ORDER_STATUSES and order_id not in orders:
                orders[order_id] = ActiveOrder(
                    order_id=order_id,
                    security_symbol=symbol,
                    status=status,
                    placed_at=event.timestamp,
                    last_update=event.timestamp,
                )
            elif order_id in orders:
                # Non-terminal status (including intent-to-close) keeps the order open
                order = orders[order_id]
                order.status = status or order.status
                order.last_update = event.timestamp
                if order.security_symbol is None:
                    order.security_symbol = symbol

        if security_symbol is not None:
            orders = {k: o for k, o in orders.items() if o.security_symbol == security_symbol}
        return orders

    def _pnl(
        self,
        run_id: str,
        timestamp: str,
        security_symbol: Optional[str],
        positions: Dict[str, PositionState],
    ) -> PnLState:
        if security_symbol is not None:
            position = positions.get(security_symbol)
            if position is None:
                return PnLState()
            return PnLState(position.realized_pnl, position.unrealized_pnl)

        events = self.store.fetch_events(
            f"SELECT {EVENT_COLUMNS} FROM events "
            "WHERE run_id = ? AND kind = ? AND ts <= ? "
            "AND json_extract(payload, '$.state_type') = ? "
            "ORDER BY ts DESC, seq DESC LIMIT 1",
            [run_id, EventKind.STATE_CHANGE.value, timestamp, PNL_STATE_TYPE],
        )
        if events:
            payload = events[0].payload
            return PnLState(
                realized_pnl=_number(payload.get("realized_pnl")),
                unrealized_pnl=_number(payload.get("unrealized_pnl")),
            )
        return PnLState(
            realized_pnl=sum(p.realized_pnl for p in positions.values()),
            unrealized_pnl=sum(p.unrealized_pnl for p in positions.values()),
        )

    def snapshot(
        self,
        run_id: str,
        timestamp: TimestampLike,
        security_symbol: Optional[str] = None,
        include_indicators: bool = True,
        include_active_orders: bool = True,
    ) -> StateSnapshot:
        """Reconstruct state as of ``timestamp`` (inclusive).

        Raises:
            QueryValidationError: If the timestamp is missing or malformed.
        """
        started = time.perf_counter()
        ts = _snapshot_ts(timestamp, "timestamp")
        positions = self._positions(run_id, ts, security_symbol)
        snap = StateSnapshot(
            run_id=run_id,
            timestamp=ts,
            positions=positions,
            indicators=self._indicators(run_id, ts, security_symbol) if include_indicators else {},
            active_orders=(
                self._active_orders(run_id, ts, security_symbol) if include_active_orders else {}
            ),
            pnl=self._pnl(run_id, ts, security_symbol, positions),
            security_filter=security_symbol,
        )
        returned = len(snap.positions) + len(snap.indicators) + len(snap.active_orders)
        snap.metadata = QueryMetadata(
            page_index=0,
            page_size=returned,
            returned_count=returned,
            total_count=returned,
            has_more=False,
            query_time_ms=(time.perf_counter() - started) * 1000.0,
        )
        return snap

    def delta(
        self,
        run_id: str,
        start_time: TimestampLike,
        end_time: TimestampLike,
        security_symbol: Optional[str] = None,
    ) -> StateDelta:
        """Difference between the snapshots at ``start_time`` and ``end_time``.

        Keys present on only one side compare against zero.

        Raises:
            QueryValidationError: For malformed timestamps or start after end.
        """
        started = time.perf_counter()
        start_ts = _snapshot_ts(start_time, "start_time")
        end_ts = _snapshot_ts(end_time, "end_time")
        if start_ts > end_ts:
            raise QueryValidationError(
                f"Invalid time range: start {start_ts} is after end {end_ts}"
            )
        before = self.snapshot(run_id, start_ts, security_symbol)
        after = self.snapshot(run_id, end_ts, security_symbol)

        delta = StateDelta(
            run_id=run_id,
            start_timestamp=start_ts,
            end_timestamp=end_ts,
            positions=_position_deltas(before.positions, after.positions),
            indicators=_indicator_deltas(before.indicators, after.indicators),
            realized_pnl=FieldChange(before.pnl.realized_pnl, after.pnl.realized_pnl),
            unrealized_pnl=FieldChange(before.pnl.unrealized_pnl, after.pnl.unrealized_pnl),
            orders_opened=sorted(set(after.active_orders) - set(before.active_orders)),
            orders_closed=sorted(set(before.active_orders) - set(after.active_orders)),
        )
        returned = len(delta.positions) + len(delta.indicators)
        delta.metadata = QueryMetadata(
            page_index=0,
            page_size=returned,
            returned_count=returned,
            total_count=returned,
            has_more=False,
            query_time_ms=(time.perf_counter() - started) * 1000.0,
        )
        return delta


def _position_deltas(
    before: Dict[str, PositionState], after: Dict[str, PositionState]
) -> List[PositionDelta]:
    deltas = []
    for symbol in sorted(set(before) | set(after)):
        b = before.get(symbol) or PositionState(security_symbol=symbol)
        a = after.get(symbol) or PositionState(security_symbol=symbol)
        deltas.append(
            PositionDelta(
                security_symbol=symbol,
                quantity=FieldChange(b.quantity, a.quantity),
                average_price=FieldChange(b.average_price, a.average_price),
                realized_pnl=FieldChange(b.realized_pnl, a.realized_pnl),
                unrealized_pnl=FieldChange(b.unrealized_pnl, a.unrealized_pnl),
            )
        )
    return deltas


def _indicator_deltas(
    before: Dict[str, IndicatorState], after: Dict[str, IndicatorState]
) -> List[IndicatorDelta]:
    deltas = []
    for key in sorted(set(before) | set(after)):
        b = before.get(key)
        a = after.get(key)
        sample = a or b
        deltas.append(
            IndicatorDelta(
                key=key,
                indicator_name=sample.indicator_name,
                security_symbol=sample.security_symbol,
                value=FieldChange(
                    _number(b.value if b else None),
                    _number(a.value if a else None),
                ),
            )
        )
    return deltas
