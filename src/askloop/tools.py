"""Tool registry shared by the stdio dispatcher and the HTTP adapter.

Tools are fixed at registry construction; names are validated for
uniqueness up front so a duplicate can never shadow another tool at
dispatch time. Results use the MCP ``content`` envelope.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import TYPE_CHECKING, Any

from .errors import AskloopError, UnknownToolError, get_error_code
from .rpc.types import INTERNAL_ERROR, INVALID_PARAMS, JSON, RpcError

if TYPE_CHECKING:
    from .broker import CorrelationBroker
    from .fallback import FallbackDialogResolver

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Per-call collaborators handed to a tool handler."""

    broker: CorrelationBroker
    resolver: FallbackDialogResolver
    # JSON-RPC id of the call-tool request; waiters are tagged with it so a
    # `cancelled` notification can find them.
    owner: str | int | None = None


ToolHandler = Callable[[ToolContext, JSON], Awaitable[JSON]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler = field(compare=False, repr=False)

    def to_dict(self) -> JSON:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


def text_result(text: str, *, extra: list[JSON] | None = None) -> JSON:
    """Wrap text in the MCP tool result envelope."""
    content: list[JSON] = [{"type": "text", "text": text}]
    if extra:
        content.extend(extra)
    return {"content": content, "isError": False}


def tool_boundary(tool_name: str) -> Callable:
    """Decorator that converts handler failures to RpcError.

    1. RpcError propagates unchanged
    2. AskloopError becomes its mapped code with structured data
    3. ValueError / TypeError become invalid params (-32602)
    4. Anything else is logged and becomes -32603 with the original message

    ``asyncio.CancelledError`` is not an Exception and always propagates.
    """

    def decorator(func: ToolHandler) -> ToolHandler:
        @wraps(func)
        async def wrapper(ctx: ToolContext, arguments: JSON) -> JSON:
            try:
                return await func(ctx, arguments)
            except RpcError:
                raise
            except AskloopError as e:
                raise RpcError(
                    code=get_error_code(e),
                    message=e.message,
                    data=e.to_dict(),
                ) from e
            except ValueError as e:
                raise RpcError(code=INVALID_PARAMS, message=str(e)) from e
            except TypeError as e:
                raise RpcError(code=INVALID_PARAMS, message=f"Invalid parameter: {e}") from e
            except Exception as e:
                logger.error("Internal error in tool %s: %s", tool_name, e, exc_info=True)
                raise RpcError(
                    code=INTERNAL_ERROR,
                    message=str(e) or f"Internal error in {tool_name}",
                    data={"tool": tool_name, "error_type": type(e).__name__},
                ) from e

        return wrapper

    return decorator


class ToolStats:
    """Call counters, readable from any thread."""

    def __init__(self) -> None:
        self.started_at = datetime.now(timezone.utc)
        self._calls: Counter[str] = Counter()
        self._lock = threading.Lock()

    def record(self, name: str) -> None:
        with self._lock:
            self._calls[name] += 1

    @property
    def total_calls(self) -> int:
        with self._lock:
            return sum(self._calls.values())

    def count(self, name: str) -> int:
        with self._lock:
            return self._calls[name]

    def snapshot(self) -> JSON:
        with self._lock:
            calls = dict(self._calls)
        return {
            "startedAt": self.started_at.isoformat(),
            "uptimeSeconds": round((datetime.now(timezone.utc) - self.started_at).total_seconds(), 1),
            "totalCalls": sum(calls.values()),
            "calls": calls,
        }


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool]) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            self._tools[tool.name] = tool
        self.stats = ToolStats()

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def describe(self) -> list[JSON]:
        return [tool.to_dict() for tool in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def call(self, name: str, ctx: ToolContext, arguments: JSON) -> JSON:
        """Run a tool by name.

        Raises:
            UnknownToolError: If no tool has that name.
            RpcError: If the handler fails.
        """
        tool = self.get(name)
        self.stats.record(name)
        logger.debug("Calling tool %s (owner=%s)", name, ctx.owner)
        return await tool.handler(ctx, arguments)
