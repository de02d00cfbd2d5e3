"""JSON-RPC 2.0 tool server over stdio.

Line-delimited JSON on stdin/stdout. The read loop never waits on a human:
``call-tool`` requests run as their own tasks and their responses are
written as each one finishes, so a handler suspended on the correlation
broker does not stall ``ping`` or a second tool call.

Method table:

- ``initialize``                                  -> server info
- ``initialized`` / ``notifications/initialized`` -> no response
- ``cancelled`` / ``notifications/cancelled``     -> no response; cancels the
  waiters of ``params.requestId`` and suppresses that call's response
- ``list-tools`` / ``tools/list``                 -> tool descriptors
- ``call-tool`` / ``tools/call``                  -> tool result
- ``ping``                                        -> ``{}``
- ``server/stats``                                -> call counters

Malformed lines and non-object JSON are logged and dropped. Anything
without an id is a notification and never gets a response.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any

from . import __version__
from .broker import CorrelationBroker
from .errors import UnknownToolError
from .fallback import FallbackDialogResolver
from .rpc.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    JSON,
    METHOD_NOT_FOUND,
    UNKNOWN_TOOL_ERROR,
    RpcError,
    encode_line,
    jsonrpc_error,
    jsonrpc_result,
)
from .rpc.validation import validate_params_object, validate_string
from .settings import Settings, settings as default_settings
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

TOOL_CALL_METHODS = frozenset({"call-tool", "tools/call"})
TOOL_LIST_METHODS = frozenset({"list-tools", "tools/list"})
INITIALIZED_METHODS = frozenset({"initialized", "notifications/initialized"})
CANCELLED_METHODS = frozenset({"cancelled", "notifications/cancelled"})

_QUIET_METHODS = frozenset({"ping", "initialize"})


class Dispatcher:
    """Maps one request envelope to one response envelope (or None).

    Shared by the stdio server and the HTTP adapter.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        broker: CorrelationBroker,
        resolver: FallbackDialogResolver,
        *,
        cfg: Settings | None = None,
    ) -> None:
        self.registry = registry
        self.broker = broker
        self.resolver = resolver
        self._cfg = cfg or default_settings
        self._in_flight: set[str | int] = set()
        self._suppressed: set[str | int] = set()

    @staticmethod
    def runs_in_background(req: JSON) -> bool:
        """True for requests that may suspend on a human answer."""
        method = req.get("method")
        return isinstance(method, str) and method in TOOL_CALL_METHODS and req.get("id") is not None

    def cancel_request(self, rpc_id: Any) -> int:
        """Cancel the waiters of an in-flight call and drop its response.

        Returns the number of waiters cancelled.
        """
        if not isinstance(rpc_id, (str, int)):
            return 0
        if rpc_id in self._in_flight:
            self._suppressed.add(rpc_id)
        return self.broker.cancel_owner(rpc_id)

    def initialize_result(self) -> JSON:
        return {
            "protocolVersion": self._cfg.protocol_version,
            "serverInfo": {"name": self._cfg.server_name, "version": __version__},
            "capabilities": {"tools": {}},
        }

    def stats(self) -> JSON:
        return {
            **self.registry.stats.snapshot(),
            "pendingWaiters": len(self.broker),
            "collaboratorAttached": self.broker.has_collaborator,
        }

    async def handle(self, req: JSON) -> JSON | None:
        method = req.get("method")
        req_id = req.get("id")
        params = req.get("params")

        if not isinstance(method, str):
            logger.warning("Invalid request: method is %s, not a string", type(method).__name__)
            if req_id is None:
                return None
            return jsonrpc_error(
                None, RpcError(code=INVALID_REQUEST, message="Invalid Request: method must be a string")
            )

        # Generate correlation ID for request tracing
        correlation_id = uuid.uuid4().hex[:12]
        if method not in _QUIET_METHODS:
            logger.debug("RPC request [%s] method=%s req_id=%s", correlation_id, method, req_id)

        if method in INITIALIZED_METHODS:
            logger.info("Client initialized")
            return None
        if method in CANCELLED_METHODS:
            target = params.get("requestId") if isinstance(params, dict) else None
            cancelled = self.cancel_request(target)
            logger.info("Cancel for request %s settled %d waiter(s)", target, cancelled)
            return None

        # Notifications can omit id; ignore.
        if req_id is None:
            return None

        try:
            if not isinstance(method, str) or not method:
                raise RpcError(code=INVALID_REQUEST, message="Invalid Request: method is required")
            if isinstance(req_id, bool) or not isinstance(req_id, (str, int)):
                raise RpcError(code=INVALID_REQUEST, message="Invalid Request: id must be a string or integer")

            if method == "initialize":
                return jsonrpc_result(req_id, self.initialize_result())
            if method == "ping":
                return jsonrpc_result(req_id, {})
            if method in TOOL_LIST_METHODS:
                return jsonrpc_result(req_id, {"tools": self.registry.describe()})
            if method == "server/stats":
                return jsonrpc_result(req_id, self.stats())
            if method in TOOL_CALL_METHODS:
                result = await self._call_tool(req_id, params)
                if self._consume_suppressed(req_id):
                    return None
                return jsonrpc_result(req_id, result)

            raise RpcError(code=METHOD_NOT_FOUND, message=f"Method not found: {method}")

        except RpcError as exc:
            if self._consume_suppressed(req_id):
                return None
            # Log RPC errors at warning level with correlation ID
            logger.warning(
                "RPC error [%s] method=%s code=%d: %s",
                correlation_id,
                method,
                exc.code,
                exc.message,
            )
            return jsonrpc_error(None if exc.code == INVALID_REQUEST else req_id, exc)
        except Exception as exc:  # noqa: BLE001
            if self._consume_suppressed(req_id):
                return None
            logger.exception("RPC internal error [%s] method=%s: %s", correlation_id, method, exc)
            return jsonrpc_error(
                req_id,
                RpcError(
                    code=INTERNAL_ERROR,
                    message=str(exc) or "Internal error",
                    data={"correlation_id": correlation_id},
                ),
            )

    async def _call_tool(self, req_id: str | int, params: Any) -> JSON:
        params = validate_params_object(params)
        name = validate_string(params.get("name"), "name", max_length=200)
        arguments = validate_params_object(params.get("arguments"), "arguments")

        ctx = ToolContext(broker=self.broker, resolver=self.resolver, owner=req_id)
        self._in_flight.add(req_id)
        try:
            return await self.registry.call(name, ctx, arguments)
        except UnknownToolError as exc:
            raise RpcError(code=UNKNOWN_TOOL_ERROR, message=exc.message, data={"tool": name}) from exc
        finally:
            self._in_flight.discard(req_id)

    def _consume_suppressed(self, req_id: Any) -> bool:
        if isinstance(req_id, (str, int)) and req_id in self._suppressed:
            self._suppressed.discard(req_id)
            logger.info("Dropping response for cancelled request %s", req_id)
            return True
        return False


# =============================================================================
# Stdio transport
# =============================================================================


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class StdioServer:
    """Reads requests line by line and writes responses as they complete."""

    drain_timeout = 2.0

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        lines: AsyncIterator[str] | None = None,
        write: Callable[[str], None] | None = None,
        readline: Callable[[], str] | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self._lines = lines
        self._write_text = write or _write_stdout
        self._readline = readline or sys.stdin.readline
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    async def _stdin_lines(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, self._readline)
            if not line:
                return
            yield line

    async def serve(self) -> None:
        """Run until EOF on input, then flush pending waiters and drain calls."""
        lines = self._lines if self._lines is not None else self._stdin_lines()
        try:
            async for line in lines:
                if self._closed:
                    break
                await self.handle_line(line)
        finally:
            await self.shutdown()

    async def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return

        try:
            req = json.loads(line)
        except (ValueError, RecursionError) as exc:
            logger.warning("Dropping malformed JSON line: %s", exc)
            return

        if not isinstance(req, dict):
            logger.warning("Dropping non-object JSON message (%s)", type(req).__name__)
            return

        if self.dispatcher.runs_in_background(req):
            task = asyncio.create_task(self._respond(req))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            await self._respond(req)

    async def shutdown(self) -> None:
        flushed = self.dispatcher.broker.flush(reason="shutdown")
        if not self._tasks:
            return
        logger.info("Draining %d in-flight call(s), %d waiter(s) flushed", len(self._tasks), flushed)
        _, pending = await asyncio.wait(set(self._tasks), timeout=self.drain_timeout)
        # Calls still inside a native dialog; cancelling kills the dialog process.
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _respond(self, req: JSON) -> None:
        resp = await self.dispatcher.handle(req)
        if resp is not None:
            self._write(resp)

    def _write(self, message: JSON) -> None:
        if self._closed:
            return
        try:
            self._write_text(encode_line(message))
        except BrokenPipeError:
            # Client closed the pipe. Treat as a clean shutdown.
            logger.info("stdout closed by client; stopping")
            self._closed = True


async def run_stdio_server(dispatcher: Dispatcher) -> None:
    """Run the tool server over stdin/stdout."""
    await StdioServer(dispatcher).serve()
