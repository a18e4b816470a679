"""
rpc.py - Method routing and error mapping for the query server.

Route modules register named operations on an RpcRouter, each with a
pydantic request model. The Dispatcher validates params against the
model, runs the handler and maps failures to structured RPC errors:

    invalid_params      pydantic validation or QueryValidationError
    store_unavailable   store released/missing/unreadable (retryable)
    method_not_found    unknown method name
    internal_error      anything else (logged with traceback)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ValidationError

from eventlog.runtime.db import StoreUnavailableError
from eventlog.runtime.resilient_db import ResilientEventStore
from eventlog.runtime.types import QueryValidationError

logger = logging.getLogger(__name__)

PARSE_ERROR = "parse_error"
INVALID_REQUEST = "invalid_request"
METHOD_NOT_FOUND = "method_not_found"
INVALID_PARAMS = "invalid_params"
STORE_UNAVAILABLE = "store_unavailable"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal_error"


class RpcErrorBody(BaseModel):
    """Error object returned in place of a result."""

    code: str
    message: str
    retryable: bool = False


class RpcError(Exception):
    """A failure reported to the caller as an error response."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return RpcErrorBody(code=self.code, message=self.message, retryable=self.retryable).model_dump()


class EmptyRequest(BaseModel):
    """Params model for operations that take no parameters."""


@dataclass
class RpcContext:
    """What handlers can see of the hosting server."""

    store: ResilientEventStore
    status: Callable[[], str] = lambda: "running"


@dataclass
class RpcMethod:
    name: str
    handler: Callable[[RpcContext, Any], Dict[str, Any]]
    request_model: Type[BaseModel]
    description: str = ""


@dataclass
class RpcRouter:
    """Collects named operations for one concern."""

    tags: List[str] = field(default_factory=list)
    methods: Dict[str, RpcMethod] = field(default_factory=dict)

    def method(self, name: str, request_model: Type[BaseModel] = EmptyRequest):
        """Register the decorated function as operation ``name``."""

        def decorator(func: Callable[[RpcContext, Any], Dict[str, Any]]):
            self.methods[name] = RpcMethod(
                name=name,
                handler=func,
                request_model=request_model,
                description=(func.__doc__ or "").strip().splitlines()[0] if func.__doc__ else "",
            )
            return func

        return decorator


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "params"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


class Dispatcher:
    """Routes method calls to registered handlers."""

    def __init__(self, context: RpcContext, routers: Iterable[RpcRouter]):
        self.context = context
        self.methods: Dict[str, RpcMethod] = {}
        for router in routers:
            self.methods.update(router.methods)

    def describe(self) -> List[Dict[str, str]]:
        return [
            {"name": m.name, "description": m.description}
            for m in sorted(self.methods.values(), key=lambda m: m.name)
        ]

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Validate ``params`` and run ``method``.

        Raises:
            RpcError: For every failure, with a code the caller can act on.
        """
        entry = self.methods.get(method)
        if entry is None:
            raise RpcError(METHOD_NOT_FOUND, f"Unknown method '{method}'")
        if params is not None and not isinstance(params, dict):
            raise RpcError(INVALID_PARAMS, "params must be an object")

        try:
            request = entry.request_model.model_validate(params or {})
        except ValidationError as e:
            raise RpcError(INVALID_PARAMS, _validation_message(e)) from None

        try:
            return entry.handler(self.context, request)
        except QueryValidationError as e:
            raise RpcError(INVALID_PARAMS, str(e)) from None
        except StoreUnavailableError as e:
            raise RpcError(STORE_UNAVAILABLE, str(e), retryable=True) from None
        except RpcError:
            raise
        except Exception as e:
            logger.exception("Method %s failed", method)
            raise RpcError(INTERNAL_ERROR, f"{type(e).__name__}: {e}") from None
