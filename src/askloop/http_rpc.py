"""FastAPI transport for the tool server.

This module is the HTTP-facing twin of rpc_server.py. Both adapters share
one Dispatcher and one CorrelationBroker; only the framing differs:

- ``POST /rpc``      one JSON-RPC 2.0 request object per call
- ``GET /events``    Server-Sent Events carrying out-of-band notifications
- ``POST /resolve``  the UI host answers a pending request
- ``POST /cancel``   the UI host abandons a pending request
- ``GET /health``    liveness
- ``GET /stats``     call counters and waiter count

The UI host keeps ``/events`` open. With no subscriber connected nobody can
answer, so requests go straight to the native dialog fallback.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from . import __version__
from .broker import CorrelationBroker
from .channels import EventBroadcaster
from .fallback import FallbackDialogResolver
from .handlers import build_default_registry
from .rpc.types import INVALID_REQUEST, PARSE_ERROR, RpcError, jsonrpc_error
from .rpc_server import Dispatcher
from .settings import Settings, settings as default_settings
from .supervisor import TimeoutSupervisor

logger = logging.getLogger(__name__)

router = APIRouter()

_SSE_KEEPALIVE = 15.0  # seconds between comment frames on an idle stream


@dataclass
class HttpState:
    dispatcher: Dispatcher
    broadcaster: EventBroadcaster

    @property
    def broker(self) -> CorrelationBroker:
        return self.dispatcher.broker


def get_state(request: Request) -> HttpState:
    return request.app.state.askloop


class ResolveRequest(BaseModel):
    requestId: str
    value: Any = None


class CancelRequest(BaseModel):
    requestId: str
    reason: str = "cancelled"


# ---------------------------------------------------------------------------
# JSON-RPC
# ---------------------------------------------------------------------------


@router.post("/rpc")
async def rpc_dispatch(request: Request, state: HttpState = Depends(get_state)) -> Response:
    """JSON-RPC 2.0 endpoint. Batches are not supported.

    Notifications (no id) are acknowledged with 204 and no body.
    """
    try:
        body = await request.json()
    except (ValueError, RecursionError):
        return JSONResponse(jsonrpc_error(None, RpcError(PARSE_ERROR, "Parse error: invalid JSON")))

    if not isinstance(body, dict):
        return JSONResponse(
            jsonrpc_error(None, RpcError(INVALID_REQUEST, "Invalid Request: expected a JSON object"))
        )

    resp = await state.dispatcher.handle(body)
    if resp is None:
        return Response(status_code=204)
    return JSONResponse(resp)


# ---------------------------------------------------------------------------
# Collaborator endpoints
# ---------------------------------------------------------------------------


@router.post("/resolve")
async def resolve(body: ResolveRequest, state: HttpState = Depends(get_state)) -> dict[str, Any]:
    return {"requestId": body.requestId, "resolved": state.broker.resolve(body.requestId, body.value)}


@router.post("/cancel")
async def cancel(body: CancelRequest, state: HttpState = Depends(get_state)) -> dict[str, Any]:
    cancelled = state.broker.cancel(body.requestId, reason=body.reason)
    return {"requestId": body.requestId, "cancelled": cancelled}


def _sse_event(event: str, data: Any) -> str:
    """Format a single SSE frame."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _event_stream(request: Request, broadcaster: EventBroadcaster) -> AsyncGenerator[str, None]:
    queue = broadcaster.subscribe()
    try:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            try:
                message = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _sse_event(str(message.get("method", "message")), message)
    finally:
        broadcaster.unsubscribe(queue)


@router.get("/events")
async def events(request: Request, state: HttpState = Depends(get_state)) -> StreamingResponse:
    """Server-Sent Events stream of out-of-band notifications.

    Each frame's event name is the notification method (``collect-input``,
    ``notify``); its data is the full JSON-RPC notification.
    """
    return StreamingResponse(
        _event_stream(request, state.broadcaster),
        media_type="text/event-stream",
        headers={
            # Prevent proxies and browsers from buffering SSE frames
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


@router.get("/health")
async def health(state: HttpState = Depends(get_state)) -> dict[str, Any]:
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "subscribers": state.broadcaster.subscriber_count,
    }


@router.get("/stats")
async def stats(state: HttpState = Depends(get_state)) -> dict[str, Any]:
    return state.dispatcher.stats()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    cfg: Settings | None = None,
    *,
    dispatcher: Dispatcher | None = None,
    broadcaster: EventBroadcaster | None = None,
) -> FastAPI:
    cfg = cfg or default_settings
    broadcaster = broadcaster or EventBroadcaster()
    if dispatcher is None:
        broker = CorrelationBroker(
            sink=broadcaster,
            supervisor=TimeoutSupervisor(cfg.waiter_timeout_seconds),
        )
        dispatcher = Dispatcher(
            build_default_registry(),
            broker,
            FallbackDialogResolver(dialog_timeout=cfg.dialog_timeout_seconds),
            cfg=cfg,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        dispatcher.broker.flush(reason="shutdown")

    app = FastAPI(title=cfg.server_name, version=__version__, lifespan=lifespan)
    app.state.askloop = HttpState(dispatcher=dispatcher, broadcaster=broadcaster)
    app.include_router(router)
    return app
