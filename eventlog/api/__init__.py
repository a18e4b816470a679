"""
Event log query server - read-only queries over a backtest debug store.

Operations (line-delimited JSON over stdio):
    list_runs               - Runs in the store, newest first
    health                  - Lifecycle state and store health
    get_events_by_kind      - Filter by kind, severity, category, time range
    get_events_by_entity    - Events referencing an order, security, ...
    get_validation_errors   - Events carrying write-time validation issues
    query_event_sequences   - Causal chains by root or by pattern
    aggregate_metrics       - count/sum/avg/min/max/stddev of a payload field
    get_state_snapshot      - Positions, indicators, orders, PnL at a time
    get_state_delta         - State changes between two times

Transport built-ins:
    cancel                  - Abandon a pending request
    list_methods            - Registered operations
"""

from .rpc import Dispatcher, RpcContext, RpcError, RpcRouter
from .server import QueryServer, main
from .stdio import StdioRpcServer

__all__ = [
    "Dispatcher",
    "QueryServer",
    "RpcContext",
    "RpcError",
    "RpcRouter",
    "StdioRpcServer",
    "main",
]
