"""Tests for the timeout supervisor."""

from __future__ import annotations

import asyncio

import pytest

from askloop.supervisor import DEFAULT_TIMEOUT_SECONDS, TimeoutSupervisor


class TestTimeoutSupervisor:
    """Tests for TimeoutSupervisor."""

    def test_default_deadline(self) -> None:
        assert TimeoutSupervisor().timeout_seconds == DEFAULT_TIMEOUT_SECONDS == 30.0

    @pytest.mark.parametrize("value", [0, -1.5])
    def test_rejects_non_positive_timeout(self, value: float) -> None:
        with pytest.raises(ValueError):
            TimeoutSupervisor(value)

    def test_fires_after_deadline(self) -> None:
        """The expiry callback gets the request id and deadline."""
        fired: list[tuple[str, float]] = []

        async def scenario() -> None:
            supervisor = TimeoutSupervisor(0.01)
            supervisor.arm("req_1", lambda rid, deadline: fired.append((rid, deadline)))
            await asyncio.sleep(0.05)

        asyncio.run(scenario())

        assert fired == [("req_1", 0.01)]

    def test_per_call_timeout_overrides_default(self) -> None:
        """A per-call timeout fires before the default."""
        fired: list[str] = []

        async def scenario() -> None:
            supervisor = TimeoutSupervisor(60)
            supervisor.arm("fast", lambda rid, _d: fired.append(rid), timeout=0.01)
            supervisor.arm("slow", lambda rid, _d: fired.append(rid))
            await asyncio.sleep(0.05)

        asyncio.run(scenario())

        assert fired == ["fast"]

    def test_disarm_prevents_expiry(self) -> None:
        """A disarmed timer never fires."""
        fired: list[str] = []

        async def scenario() -> None:
            supervisor = TimeoutSupervisor(0.01)
            handle = supervisor.arm("req_1", lambda rid, _d: fired.append(rid))
            supervisor.disarm(handle)
            await asyncio.sleep(0.05)

        asyncio.run(scenario())

        assert fired == []

    def test_disarm_tolerates_none_and_repeats(self) -> None:
        """Disarming None or twice is harmless."""

        async def scenario() -> None:
            supervisor = TimeoutSupervisor(1)
            handle = supervisor.arm("req_1", lambda *_: None)
            supervisor.disarm(handle)
            supervisor.disarm(handle)
            supervisor.disarm(None)

        asyncio.run(scenario())

    def test_rejects_non_positive_call_timeout(self) -> None:
        async def scenario() -> None:
            TimeoutSupervisor(1).arm("req_1", lambda *_: None, timeout=0)

        with pytest.raises(ValueError):
            asyncio.run(scenario())
