"""Tests for the correlation broker.

Covers id uniqueness, exactly-once settlement, timeouts, cancellation and
the shutdown flush.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any

import pytest

from askloop.broker import COLLECT_INPUT_METHOD, CorrelationBroker
from askloop.errors import (
    CollaboratorUnavailableError,
    WaiterCancelledError,
    WaiterTimeoutError,
)
from askloop.rpc.types import JSON
from askloop.supervisor import TimeoutSupervisor


class RecordingSink:
    def __init__(self) -> None:
        self.messages: list[JSON] = []

    def __call__(self, message: JSON) -> None:
        self.messages.append(message)

    def request_ids(self) -> list[str]:
        return [m["params"]["arguments"][0] for m in self.messages]


def _broker(timeout: float = 5.0) -> tuple[CorrelationBroker, RecordingSink]:
    sink = RecordingSink()
    return CorrelationBroker(sink=sink, supervisor=TimeoutSupervisor(timeout)), sink


async def _until_pending(broker: CorrelationBroker, count: int = 1) -> None:
    while len(broker) < count:
        await asyncio.sleep(0)


class TestRequestResolve:
    """Tests for request() and resolve()."""

    def test_emits_collect_input_notification(self) -> None:
        """request() announces the waiter with a collect-input notification."""
        broker, sink = _broker()

        async def scenario() -> Any:
            task = asyncio.create_task(broker.request("input-dialog", "Title", "Body", False, "input"))
            await _until_pending(broker)
            broker.resolve(sink.request_ids()[0], "answer")
            return await task

        assert asyncio.run(scenario()) == "answer"

        (message,) = sink.messages
        assert message["jsonrpc"] == "2.0"
        assert "id" not in message
        assert message["method"] == COLLECT_INPUT_METHOD
        assert message["params"]["command"] == "input-dialog"
        request_id, *rest = message["params"]["arguments"]
        assert request_id.startswith("req_")
        assert rest == ["Title", "Body", False, "input"]

    def test_free_text_round_trip_is_verbatim(self) -> None:
        """Free text comes back without trimming or re-encoding."""
        broker, sink = _broker()
        text = "  multi\nline answer with \"quotes\" and ünïcode  "

        async def scenario() -> Any:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            broker.resolve(sink.request_ids()[0], text)
            return await task

        assert asyncio.run(scenario()) == text

    def test_waiter_removed_after_resolution(self) -> None:
        """A resolved waiter leaves the table."""
        broker, sink = _broker()

        async def scenario() -> None:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            request_id = sink.request_ids()[0]
            assert request_id in broker
            broker.resolve(request_id, 1)
            await task
            assert request_id not in broker

        asyncio.run(scenario())
        assert len(broker) == 0

    def test_second_resolve_is_silent_noop(self) -> None:
        """Only the first resolve settles; later ones report False."""
        broker, sink = _broker()

        async def scenario() -> tuple[bool, bool, Any]:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            request_id = sink.request_ids()[0]
            first = broker.resolve(request_id, "first")
            second = broker.resolve(request_id, "second")
            return first, second, await task

        assert asyncio.run(scenario()) == (True, False, "first")

    def test_unknown_id_does_not_affect_other_waiters(self) -> None:
        """A stray id leaves outstanding waiters alone."""
        broker, sink = _broker()

        async def scenario() -> Any:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            assert broker.resolve("req_999_deadbeef", "stray") is False
            assert len(broker) == 1
            broker.resolve(sink.request_ids()[0], "mine")
            return await task

        assert asyncio.run(scenario()) == "mine"

    def test_out_of_order_settlement(self) -> None:
        """Each waiter gets its own answer regardless of settlement order."""
        broker, sink = _broker()

        async def scenario() -> list[Any]:
            tasks = [asyncio.create_task(broker.request("input-dialog", n)) for n in range(3)]
            await _until_pending(broker, 3)
            ids = sink.request_ids()
            for index in (2, 0, 1):
                broker.resolve(ids[index], f"answer-{index}")
            return await asyncio.gather(*tasks)

        assert asyncio.run(scenario()) == ["answer-0", "answer-1", "answer-2"]

    def test_ids_unique_under_concurrent_load(self) -> None:
        """Two hundred concurrent requests get distinct ids."""
        broker, sink = _broker()

        async def scenario() -> None:
            tasks = [asyncio.create_task(broker.request("input-dialog")) for _ in range(200)]
            await _until_pending(broker, 200)
            for request_id in sink.request_ids():
                broker.resolve(request_id, request_id)
            results = await asyncio.gather(*tasks)
            assert sorted(results) == sorted(sink.request_ids())

        asyncio.run(scenario())

        ids = sink.request_ids()
        assert len(ids) == 200
        assert len(set(ids)) == 200

    def test_custom_prefix(self) -> None:
        broker, _sink = _broker()
        assert broker.new_request_id("continue").startswith("continue_")

    def test_resolve_threadsafe_from_foreign_thread(self) -> None:
        """A resolve from another thread lands on the broker's loop."""
        broker, sink = _broker()

        async def scenario() -> Any:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            request_id = sink.request_ids()[0]
            thread = threading.Thread(target=broker.resolve_threadsafe, args=(request_id, "from thread"))
            thread.start()
            thread.join()
            return await task

        assert asyncio.run(scenario()) == "from thread"


class TestTimeouts:
    """Tests for deadline handling."""

    def test_timeout_settles_and_removes_waiter(self) -> None:
        """An expired waiter fails with a recoverable timeout and is removed."""
        broker, sink = _broker(timeout=0.02)

        async def scenario() -> None:
            with pytest.raises(WaiterTimeoutError) as excinfo:
                await broker.request("input-dialog")
            assert excinfo.value.recoverable is True
            assert excinfo.value.request_id == sink.request_ids()[0]

        asyncio.run(scenario())

        assert len(broker) == 0
        assert broker.resolve(sink.request_ids()[0], "late") is False

    def test_resolve_before_deadline_disarms_timer(self) -> None:
        """Resolving early leaves no expiry behind."""
        broker, sink = _broker(timeout=0.05)

        async def scenario() -> Any:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            broker.resolve(sink.request_ids()[0], "in time")
            result = await task
            # Past the original deadline; a stray expiry would raise inside the loop.
            await asyncio.sleep(0.1)
            return result

        assert asyncio.run(scenario()) == "in time"

    def test_late_timer_after_resolve_is_noop(self) -> None:
        """Settlement holds even when the expiry timer is never cancelled."""

        class NeverDisarm(TimeoutSupervisor):
            @staticmethod
            def disarm(handle: asyncio.TimerHandle | None) -> None:
                return None

        sink = RecordingSink()
        broker = CorrelationBroker(sink=sink, supervisor=NeverDisarm(0.02))

        async def scenario() -> tuple[Any, bool, str]:
            first = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            second = asyncio.create_task(broker.request("input-dialog", timeout=5))
            await _until_pending(broker, 2)
            first_id, second_id = sink.request_ids()

            broker.resolve(first_id, "answered")
            result = await first
            # The first timer fires here and finds nothing to settle.
            await asyncio.sleep(0.1)
            still_pending = second_id in broker and not second.done()
            broker.resolve(second_id, "second")
            assert first.result() == result
            return result, still_pending, await second

        assert asyncio.run(scenario()) == ("answered", True, "second")
        assert len(broker) == 0

    def test_per_request_timeout(self) -> None:
        """A per-call timeout overrides the broker default."""
        broker, _sink = _broker(timeout=60)

        async def scenario() -> None:
            with pytest.raises(WaiterTimeoutError):
                await broker.request("input-dialog", timeout=0.01)

        asyncio.run(scenario())


class TestCollaboratorUnavailable:
    """Tests for requests made without a working sink."""

    def test_no_sink_raises_without_waiter(self) -> None:
        """No sink means no waiter is left behind."""
        broker = CorrelationBroker()

        async def scenario() -> None:
            with pytest.raises(CollaboratorUnavailableError):
                await broker.request("input-dialog")

        asyncio.run(scenario())
        assert len(broker) == 0
        assert broker.has_collaborator is False

    def test_failing_sink_discards_waiter(self) -> None:
        """A sink that raises is reported as an unavailable collaborator."""

        def broken(_message: JSON) -> None:
            raise BrokenPipeError("host went away")

        broker = CorrelationBroker(sink=broken)

        async def scenario() -> None:
            with pytest.raises(CollaboratorUnavailableError) as excinfo:
                await broker.request("input-dialog")
            assert "host went away" in excinfo.value.message

        asyncio.run(scenario())
        assert len(broker) == 0

    def test_detach_and_attach(self) -> None:
        broker, sink = _broker()
        broker.detach()
        assert broker.has_collaborator is False
        broker.attach(sink)
        assert broker.has_collaborator is True

    def test_notify_without_waiter(self) -> None:
        """notify() emits a message but creates no waiter."""
        broker, sink = _broker()
        broker.notify("notify", {"message": "hi", "level": "info"})
        assert sink.messages == [
            {"jsonrpc": "2.0", "method": "notify", "params": {"message": "hi", "level": "info"}}
        ]
        assert len(broker) == 0

    def test_notify_without_sink_raises(self) -> None:
        with pytest.raises(CollaboratorUnavailableError):
            CorrelationBroker().notify("notify", {})


class TestCancellation:
    """Tests for cancel(), cancel_owner() and flush()."""

    def test_cancel_single_waiter(self) -> None:
        """cancel() fails one waiter with the given reason."""
        broker, sink = _broker()

        async def scenario() -> None:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            assert broker.cancel(sink.request_ids()[0], reason="user closed") is True
            with pytest.raises(WaiterCancelledError) as excinfo:
                await task
            assert excinfo.value.reason == "user closed"

        asyncio.run(scenario())
        assert broker.cancel("req_1_unknown") is False

    def test_cancel_owner_only_touches_owned_waiters(self) -> None:
        """cancel_owner() leaves other callers' waiters pending."""
        broker, sink = _broker()

        async def scenario() -> Any:
            mine = asyncio.create_task(broker.request("input-dialog", owner=7))
            other = asyncio.create_task(broker.request("input-dialog", owner=8))
            await _until_pending(broker, 2)
            assert broker.cancel_owner(7) == 1
            with pytest.raises(WaiterCancelledError):
                await mine
            assert len(broker) == 1
            broker.resolve(sink.request_ids()[1], "still here")
            return await other

        assert asyncio.run(scenario()) == "still here"

    def test_flush_settles_everything(self) -> None:
        """flush() cancels every outstanding waiter with the shutdown reason."""
        broker, _sink = _broker()

        async def scenario() -> list[Any]:
            tasks = [asyncio.create_task(broker.request("input-dialog")) for _ in range(5)]
            await _until_pending(broker, 5)
            assert broker.flush() == 5
            return await asyncio.gather(*tasks, return_exceptions=True)

        results = asyncio.run(scenario())
        assert all(isinstance(r, WaiterCancelledError) and r.reason == "shutdown" for r in results)
        assert len(broker) == 0
        assert broker.flush() == 0

    def test_cancelled_task_frees_its_slot(self) -> None:
        """Cancelling the awaiting task removes its waiter."""
        broker, _sink = _broker()

        async def scenario() -> None:
            task = asyncio.create_task(broker.request("input-dialog"))
            await _until_pending(broker)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert len(broker) == 0
