"""Deadline scheduling for pending waiters.

The supervisor only schedules; it never touches the waiter table. Expiry is
delivered through a callback into the broker, whose settle path is a no-op
for ids that are already gone, so a timer that fires after settlement
(or races with it) cannot produce a second outcome.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class TimeoutSupervisor:
    """Arms one deferred expiry per waiter on the running event loop."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds

    def arm(
        self,
        request_id: str,
        on_expire: Callable[[str, float], object],
        *,
        timeout: float | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> asyncio.TimerHandle:
        """Schedule on_expire(request_id, deadline) after the deadline.

        Returns the timer handle so the owner can disarm it on settlement.
        """
        deadline = self.timeout_seconds if timeout is None else timeout
        if deadline <= 0:
            raise ValueError("timeout must be positive")
        loop = loop or asyncio.get_running_loop()
        logger.debug("Armed %.1fs deadline for %s", deadline, request_id)
        return loop.call_later(deadline, self._fire, request_id, deadline, on_expire)

    @staticmethod
    def disarm(handle: asyncio.TimerHandle | None) -> None:
        """Cancel a pending expiry. Cancelling a fired or cancelled handle is harmless."""
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _fire(request_id: str, deadline: float, on_expire: Callable[[str, float], object]) -> None:
        logger.debug("Deadline reached for %s after %.1fs", request_id, deadline)
        on_expire(request_id, deadline)
