from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from askloop.broker import CorrelationBroker
from askloop.dialogs import DialogRequest
from askloop.fallback import FallbackDialogResolver
from askloop.handlers import build_default_registry
from askloop.rpc.types import JSON
from askloop.rpc_server import Dispatcher
from askloop.supervisor import TimeoutSupervisor
from askloop.tools import ToolRegistry


class ScriptedCollaborator:
    """Out-of-band sink standing in for the UI host.

    Records every notification. When ``respond`` is set it answers each
    ``collect-input`` with ``answer`` on the next loop turn, the way a real
    host answers some time after the notification went out.
    """

    def __init__(self, answer: Any = None, *, respond: bool = True) -> None:
        self.answer = answer
        self.respond = respond
        self.messages: list[JSON] = []
        self.broker: CorrelationBroker | None = None

    def bind(self, broker: CorrelationBroker) -> ScriptedCollaborator:
        self.broker = broker
        broker.attach(self)
        return self

    def request_ids(self) -> list[str]:
        return [m["params"]["arguments"][0] for m in self.messages if m["method"] == "collect-input"]

    def __call__(self, message: JSON) -> None:
        self.messages.append(message)
        if self.respond and self.broker is not None and message["method"] == "collect-input":
            request_id = message["params"]["arguments"][0]
            asyncio.get_running_loop().call_soon(self.broker.resolve, request_id, self.answer)


class FakeDialog:
    """Native dialog stand-in: returns scripted answers in order.

    An exception instance in the script is raised instead of returned.
    """

    def __init__(self, *answers: Any) -> None:
        self.answers = list(answers)
        self.requests: list[DialogRequest] = []

    async def __call__(self, request: DialogRequest) -> Any:
        self.requests.append(request)
        answer = self.answers.pop(0) if self.answers else None
        if isinstance(answer, BaseException):
            raise answer
        return answer


class Harness:
    def __init__(
        self,
        dispatcher: Dispatcher,
        collaborator: ScriptedCollaborator,
        dialog: FakeDialog,
    ) -> None:
        self.dispatcher = dispatcher
        self.collaborator = collaborator
        self.dialog = dialog

    @property
    def broker(self) -> CorrelationBroker:
        return self.dispatcher.broker

    def call(self, name: str, arguments: JSON | None = None, *, req_id: int = 1) -> JSON | None:
        req = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "call-tool",
            "params": {"name": name, "arguments": arguments or {}},
        }
        return asyncio.run(self.dispatcher.handle(req))

    def rpc(self, method: str, params: Any = None, *, req_id: Any = 1) -> JSON | None:
        req: JSON = {"jsonrpc": "2.0", "method": method}
        if req_id is not None:
            req["id"] = req_id
        if params is not None:
            req["params"] = params
        return asyncio.run(self.dispatcher.handle(req))


@pytest.fixture
def make_harness() -> Callable[..., Harness]:
    """Build a dispatcher wired to a scripted UI host and a fake native dialog."""

    def factory(
        answer: Any = None,
        *,
        respond: bool = True,
        attach: bool = True,
        dialog: FakeDialog | None = None,
        timeout: float = 5.0,
        registry: ToolRegistry | None = None,
    ) -> Harness:
        broker = CorrelationBroker(supervisor=TimeoutSupervisor(timeout))
        collaborator = ScriptedCollaborator(answer, respond=respond)
        if attach:
            collaborator.bind(broker)
        dialog = dialog or FakeDialog()
        dispatcher = Dispatcher(
            registry or build_default_registry(),
            broker,
            FallbackDialogResolver(dialog),
        )
        return Harness(dispatcher, collaborator, dialog)

    return factory


@pytest.fixture
def restore_root_logger() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    try:
        yield root
    finally:
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)
