"""
stdio.py - Line-delimited JSON request/response transport.

Each input line is one request:

    {"id": 1, "method": "get_events_by_kind", "params": {"run_id": "r1"}}

Each output line is one response carrying the request's id (a string,
number or null; any other id is answered with invalid_request):

    {"id": 1, "result": {...}}
    {"id": 1, "error": {"code": "invalid_params", "message": "...", "retryable": false}}

Requests are handled concurrently (each on a worker thread), so responses
may arrive out of order. Two built-in methods are handled by the
transport itself:

    cancel        {"request_id": <id>}  abandon a pending request
    list_methods  names and descriptions of the registered operations

Stdout carries protocol messages only; logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from typing import Any, Dict, Optional, TextIO

from .rpc import CANCELLED, INVALID_REQUEST, PARSE_ERROR, Dispatcher, RpcError

logger = logging.getLogger(__name__)

METHOD_CANCEL = "cancel"
METHOD_LIST = "list_methods"


def _read_lines(stream: TextIO, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    # Daemon thread: a blocked readline must never keep the process alive
    try:
        for line in iter(stream.readline, ""):
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)
    except (RuntimeError, ValueError, OSError):
        # Loop closed or stream closed underneath us
        return


def _is_valid_id(value: Any) -> bool:
    return value is None or (isinstance(value, (str, int, float)) and not isinstance(value, bool))


class StdioRpcServer:
    """Serves a Dispatcher over line-delimited JSON streams."""

    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher
        self._pending: Dict[Any, asyncio.Task] = {}
        self._write_lock: Optional[asyncio.Lock] = None
        self._stdout: Optional[TextIO] = None

    async def serve(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
        """Handle requests until stdin reaches end of file."""
        stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._write_lock = asyncio.Lock()
        queue: asyncio.Queue = asyncio.Queue()
        reader = threading.Thread(
            target=_read_lines,
            args=(stdin, asyncio.get_running_loop(), queue),
            name="eventlog-stdin-reader",
            daemon=True,
        )
        reader.start()

        while True:
            line = await queue.get()
            if line is None:
                break
            line = line.strip()
            if line:
                await self._accept(line)

        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)
        logger.info("Request stream closed")

    async def _accept(self, line: str) -> None:
        try:
            message = json.loads(line)
        except ValueError as e:
            await self._send({"id": None, "error": RpcError(PARSE_ERROR, str(e)).to_dict()})
            return
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            request_id = message.get("id") if isinstance(message, dict) else None
            error = RpcError(INVALID_REQUEST, "Request must be an object with a 'method' string")
            await self._send({"id": request_id, "error": error.to_dict()})
            return

        request_id = message.get("id")
        if not _is_valid_id(request_id):
            error = RpcError(INVALID_REQUEST, "Request id must be a string, a number or null")
            await self._send({"id": None, "error": error.to_dict()})
            return
        method = message["method"]
        params = message.get("params")

        if method == METHOD_CANCEL:
            target = (params or {}).get("request_id") if isinstance(params, dict) else None
            await self._send({"id": request_id, "result": {"cancelled": self.cancel(target)}})
            return
        if method == METHOD_LIST:
            await self._send({"id": request_id, "result": {"methods": self.dispatcher.describe()}})
            return

        task = asyncio.create_task(self._handle(request_id, method, params))
        self._pending[request_id] = task
        task.add_done_callback(lambda t, key=request_id: self._forget(key, t))

    def _forget(self, request_id: Any, task: asyncio.Task) -> None:
        if self._pending.get(request_id) is task:
            del self._pending[request_id]

    def cancel(self, request_id: Any) -> bool:
        """Cancel a pending request. Returns False if it already finished."""
        if not _is_valid_id(request_id):
            return False
        task = self._pending.get(request_id)
        if task is None or task.done():
            return False
        return task.cancel()

    async def _handle(self, request_id: Any, method: str, params: Any) -> None:
        try:
            result = await asyncio.to_thread(self.dispatcher.call, method, params)
            response = {"id": request_id, "result": result}
        except RpcError as e:
            response = {"id": request_id, "error": e.to_dict()}
        except asyncio.CancelledError:
            error = RpcError(CANCELLED, f"Request {request_id!r} was cancelled")
            await self._send({"id": request_id, "error": error.to_dict()})
            raise
        await self._send(response)

    async def _send(self, response: Dict[str, Any]) -> None:
        async with self._write_lock:
            self._stdout.write(json.dumps(response, default=str) + "\n")
            self._stdout.flush()
