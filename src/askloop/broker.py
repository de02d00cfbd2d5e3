"""Correlation broker between tool handlers and the UI host.

A tool handler that needs a human answer calls ``await broker.request(...)``.
The broker registers a pending waiter keyed by a fresh request id, emits a
``collect-input`` notification on the out-of-band sink and suspends the
handler. The UI host later answers through ``resolve(request_id, value)``.

Every waiter reaches exactly one outcome: fulfilled, timed out, cancelled
(explicitly, by owner, or by the shutdown flush). Settlement pops the waiter
from the table first and only the caller that popped it may complete the
future, so late timers and duplicate answers are silent no-ops.

The table is the only state shared with other threads (HTTP handlers,
stats snapshots); it is guarded by a lock. Futures are completed on the
loop thread only; foreign threads go through ``resolve_threadsafe``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import CollaboratorUnavailableError, WaiterCancelledError, WaiterTimeoutError
from .rpc.types import JSON, jsonrpc_notification
from .supervisor import TimeoutSupervisor

logger = logging.getLogger(__name__)

COLLECT_INPUT_METHOD = "collect-input"

# Receives one out-of-band notification. Raising means the collaborator is unreachable.
NotificationSink = Callable[[JSON], None]


@dataclass
class PendingWaiter:
    """An outstanding request awaiting a human-supplied answer."""

    request_id: str
    command: str
    created_at: datetime
    future: asyncio.Future[Any] = field(repr=False)
    owner: str | int | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def fulfill(self, value: Any) -> None:
        if not self.future.done():
            self.future.set_result(value)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)

    def age_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.created_at).total_seconds()


class CorrelationBroker:
    """Owns the pending-waiter table for the lifetime of the process."""

    def __init__(
        self,
        *,
        sink: NotificationSink | None = None,
        supervisor: TimeoutSupervisor | None = None,
        id_prefix: str = "req",
    ) -> None:
        self._sink = sink
        self._supervisor = supervisor or TimeoutSupervisor()
        self._id_prefix = id_prefix
        self._waiters: dict[str, PendingWaiter] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Collaborator attachment
    # ------------------------------------------------------------------

    def attach(self, sink: NotificationSink) -> None:
        """Route out-of-band notifications to sink."""
        self._sink = sink

    def detach(self) -> None:
        self._sink = None

    @property
    def has_collaborator(self) -> bool:
        return self._sink is not None

    @property
    def timeout_seconds(self) -> float:
        return self._supervisor.timeout_seconds

    def notify(self, method: str, params: Any) -> None:
        """Emit a fire-and-forget notification; no waiter is created.

        Raises:
            CollaboratorUnavailableError: If no sink is attached or it fails.
        """
        sink = self._sink
        if sink is None:
            raise CollaboratorUnavailableError(command=method)
        try:
            sink(jsonrpc_notification(method, params))
        except Exception as exc:
            raise CollaboratorUnavailableError(
                f"Failed to notify collaborator: {exc}", command=method
            ) from exc

    # ------------------------------------------------------------------
    # Request side
    # ------------------------------------------------------------------

    def new_request_id(self, prefix: str | None = None) -> str:
        """Generate an id that is unique for the process lifetime.

        The monotonically increasing counter alone guarantees uniqueness; the
        random suffix keeps ids opaque to the UI host.
        """
        return f"{prefix or self._id_prefix}_{next(self._counter)}_{uuid.uuid4().hex[:12]}"

    async def request(
        self,
        command: str,
        *arguments: Any,
        owner: str | int | None = None,
        timeout: float | None = None,
        prefix: str | None = None,
    ) -> Any:
        """Ask the UI host to run command and wait for its answer.

        The emitted notification carries ``arguments = [request_id, *arguments]``.

        Raises:
            CollaboratorUnavailableError: No sink attached, or the sink failed.
            WaiterTimeoutError: No answer before the deadline.
            WaiterCancelledError: Cancelled explicitly or flushed at shutdown.
        """
        sink = self._sink
        if sink is None:
            raise CollaboratorUnavailableError(command=command)

        loop = asyncio.get_running_loop()
        self._loop = loop
        request_id = self.new_request_id(prefix)
        waiter = PendingWaiter(
            request_id=request_id,
            command=command,
            created_at=datetime.now(timezone.utc),
            future=loop.create_future(),
            owner=owner,
        )
        with self._lock:
            self._waiters[request_id] = waiter
        waiter.timer = self._supervisor.arm(request_id, self._expire, timeout=timeout, loop=loop)

        try:
            sink(
                jsonrpc_notification(
                    COLLECT_INPUT_METHOD,
                    {"command": command, "arguments": [request_id, *arguments]},
                )
            )
        except Exception as exc:
            self._discard(request_id)
            logger.warning("Collaborator notification failed for %s: %s", request_id, exc)
            raise CollaboratorUnavailableError(
                f"Failed to notify collaborator: {exc}", command=command
            ) from exc

        logger.debug("Waiting on %s (command=%s, owner=%s)", request_id, command, owner)
        try:
            return await waiter.future
        finally:
            # Frees the slot when the awaiting task itself is cancelled.
            self._discard(request_id)

    # ------------------------------------------------------------------
    # Settlement side
    # ------------------------------------------------------------------

    def resolve(self, request_id: str, value: Any) -> bool:
        """Settle the waiter for request_id with value.

        Unknown, timed-out, cancelled or already-answered ids are a silent no-op.

        Returns:
            True if a waiter was settled.
        """
        waiter = self._take(request_id)
        if waiter is None:
            logger.debug("Ignoring answer for unknown or settled request %s", request_id)
            return False
        waiter.fulfill(value)
        logger.info("Resolved %s after %.1fs", request_id, waiter.age_seconds())
        return True

    def resolve_threadsafe(self, request_id: str, value: Any) -> None:
        """Schedule resolve() on the broker's loop from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No running loop; dropping answer for %s", request_id)
            return
        loop.call_soon_threadsafe(self.resolve, request_id, value)

    def cancel(self, request_id: str, *, reason: str = "cancelled") -> bool:
        """Settle one waiter with WaiterCancelledError."""
        waiter = self._take(request_id)
        if waiter is None:
            return False
        waiter.fail(WaiterCancelledError(request_id, reason=reason))
        logger.info("Cancelled %s (%s)", request_id, reason)
        return True

    def cancel_owner(self, owner: str | int, *, reason: str = "cancelled") -> int:
        """Cancel every waiter created on behalf of owner (an RPC request id)."""
        with self._lock:
            request_ids = [rid for rid, w in self._waiters.items() if w.owner == owner]
        return sum(1 for rid in request_ids if self.cancel(rid, reason=reason))

    def flush(self, *, reason: str = "shutdown") -> int:
        """Cancel all outstanding waiters. Called once at teardown."""
        with self._lock:
            request_ids = list(self._waiters)
        flushed = sum(1 for rid in request_ids if self.cancel(rid, reason=reason))
        if flushed:
            logger.info("Flushed %d pending waiter(s) on %s", flushed, reason)
        return flushed

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._waiters)

    def get(self, request_id: str) -> PendingWaiter | None:
        with self._lock:
            return self._waiters.get(request_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._waiters)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._waiters

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _take(self, request_id: str) -> PendingWaiter | None:
        """Remove and return the waiter; whoever gets it owns the settlement."""
        with self._lock:
            waiter = self._waiters.pop(request_id, None)
        if waiter is not None:
            self._supervisor.disarm(waiter.timer)
        return waiter

    def _expire(self, request_id: str, deadline: float) -> None:
        waiter = self._take(request_id)
        if waiter is None:
            return
        waiter.fail(WaiterTimeoutError(request_id, timeout_seconds=deadline))
        logger.warning("Request %s timed out after %.1fs", request_id, deadline)

    def _discard(self, request_id: str) -> None:
        waiter = self._take(request_id)
        if waiter is not None and not waiter.future.done():
            waiter.future.cancel()
