"""Derived state views reconstructed from the event log.

None of these are persisted; the snapshot module computes them on demand
by scanning events up to a point in time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .queries import QueryMetadata


@dataclass
class PositionState:
    """Latest known position for one security."""

    security_symbol: str
    quantity: float = 0.0
    average_price: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    last_update: Optional[str] = None
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "security_symbol": self.security_symbol,
            "quantity": self.quantity,
            "average_price": self.average_price,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "last_update": self.last_update,
            "event_id": self.event_id,
        }


@dataclass
class IndicatorState:
    """Latest value of one indicator on one security."""

    indicator_name: str
    security_symbol: Optional[str]
    value: Optional[float]
    last_update: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def key(self) -> str:
        if self.security_symbol:
            return f"{self.indicator_name}:{self.security_symbol}"
        return self.indicator_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "indicator_name": self.indicator_name,
            "security_symbol": self.security_symbol,
            "value": self.value,
            "last_update": self.last_update,
            "event_id": self.event_id,
        }


@dataclass
class ActiveOrder:
    """An order placed but not terminally resolved by the snapshot time."""

    order_id: str
    security_symbol: Optional[str] = None
    status: Optional[str] = None
    placed_at: Optional[str] = None
    last_update: Optional[str] = None
    filled_quantity: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "security_symbol": self.security_symbol,
            "status": self.status,
            "placed_at": self.placed_at,
            "last_update": self.last_update,
            "filled_quantity": self.filled_quantity,
        }


@dataclass
class PnLState:
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "total_pnl": self.total_pnl,
        }


@dataclass
class StateSnapshot:
    """Point-in-time view of positions, indicators, orders and P&L.

    Attributes:
        run_id: Run the snapshot was computed for.
        timestamp: Snapshot time (store timestamp text); events at exactly
            this time are included.
        positions: Keyed by security symbol.
        indicators: Keyed by "indicator_name:security_symbol" (or just the
            indicator name when the event has no security).
        active_orders: Keyed by order id.
        pnl: Aggregate P&L at the snapshot time.
        security_filter: Security the snapshot was restricted to, if any.
    """

    run_id: str
    timestamp: str
    positions: Dict[str, PositionState] = field(default_factory=dict)
    indicators: Dict[str, IndicatorState] = field(default_factory=dict)
    active_orders: Dict[str, ActiveOrder] = field(default_factory=dict)
    pnl: PnLState = field(default_factory=PnLState)
    security_filter: Optional[str] = None
    metadata: QueryMetadata = field(default_factory=QueryMetadata)

    def to_dict(self, include_indicators: bool = True, include_active_orders: bool = True) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "security_filter": self.security_filter,
            "positions": [p.to_dict() for p in self.positions.values()],
            "pnl": self.pnl.to_dict(),
        }
        if include_indicators:
            result["indicators"] = [i.to_dict() for i in self.indicators.values()]
        if include_active_orders:
            result["active_orders"] = [o.to_dict() for o in self.active_orders.values()]
        result["metadata"] = self.metadata.to_dict()
        return result


@dataclass
class FieldChange:
    """Before/after pair for one numeric field."""

    before: float
    after: float

    @property
    def change(self) -> float:
        return self.after - self.before

    def to_dict(self) -> Dict[str, float]:
        return {"before": self.before, "after": self.after, "change": self.change}


@dataclass
class PositionDelta:
    security_symbol: str
    quantity: FieldChange
    average_price: FieldChange
    realized_pnl: FieldChange
    unrealized_pnl: FieldChange

    def to_dict(self) -> Dict[str, Any]:
        return {
            "security_symbol": self.security_symbol,
            "quantity": self.quantity.to_dict(),
            "average_price": self.average_price.to_dict(),
            "realized_pnl": self.realized_pnl.to_dict(),
            "unrealized_pnl": self.unrealized_pnl.to_dict(),
        }


@dataclass
class IndicatorDelta:
    key: str
    indicator_name: str
    security_symbol: Optional[str]
    value: FieldChange

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "indicator_name": self.indicator_name,
            "security_symbol": self.security_symbol,
            "value": self.value.to_dict(),
        }


@dataclass
class StateDelta:
    """Field-by-field difference between two snapshots of the same run."""

    run_id: str
    start_timestamp: str
    end_timestamp: str
    positions: List[PositionDelta] = field(default_factory=list)
    indicators: List[IndicatorDelta] = field(default_factory=list)
    realized_pnl: FieldChange = field(default_factory=lambda: FieldChange(0.0, 0.0))
    unrealized_pnl: FieldChange = field(default_factory=lambda: FieldChange(0.0, 0.0))
    orders_opened: List[str] = field(default_factory=list)
    orders_closed: List[str] = field(default_factory=list)
    metadata: QueryMetadata = field(default_factory=QueryMetadata)

    @property
    def total_pnl_change(self) -> float:
        return self.realized_pnl.change + self.unrealized_pnl.change

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "start_timestamp": self.start_timestamp,
            "end_timestamp": self.end_timestamp,
            "positions": [p.to_dict() for p in self.positions],
            "indicators": [i.to_dict() for i in self.indicators],
            "pnl": {
                "realized_pnl": self.realized_pnl.to_dict(),
                "unrealized_pnl": self.unrealized_pnl.to_dict(),
                "total_pnl_change": self.total_pnl_change,
            },
            "orders_opened": list(self.orders_opened),
            "orders_closed": list(self.orders_closed),
            "metadata": self.metadata.to_dict(),
        }
