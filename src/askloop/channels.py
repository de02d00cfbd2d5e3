"""Out-of-band channels between the server and the UI host.

Outbound notifications never share a stream with JSON-RPC responses:

- ``LineSink``: line-delimited JSON on stderr or on a file/FIFO
- ``EventBroadcaster``: fan-out to Server-Sent Events subscribers (HTTP mode)

Inbound answers in stdio mode come from ``CollaboratorReader``, which tails
a FIFO or file of line-delimited JSON messages::

    {"method": "resolve", "params": {"requestId": "...", "value": ...}}
    {"method": "cancel", "params": {"requestId": "..."}}

Every sink raises when nobody can receive the message; the broker turns
that into CollaboratorUnavailableError and the fallback dialog takes over.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import stat
import sys
import threading
from pathlib import Path
from typing import IO, Any

from .broker import CorrelationBroker
from .errors import CollaboratorUnavailableError
from .rpc.types import JSON, encode_line

logger = logging.getLogger(__name__)


# =============================================================================
# Outbound: line-delimited JSON
# =============================================================================


class LineSink:
    """Writes one JSON message per line to a stream or a path.

    A path is opened lazily on the first write. A FIFO is opened without
    blocking, so a FIFO nobody reads from fails fast (ENXIO) instead of
    stalling the request.
    """

    def __init__(self, target: IO[str] | Path | None = None) -> None:
        self._path = target if isinstance(target, Path) else None
        self._stream: IO[str] | None = None if self._path is not None else (target or sys.stderr)
        self._owns_stream = False
        self._lock = threading.Lock()

    def __call__(self, message: JSON) -> None:
        line = encode_line(message)
        with self._lock:
            stream = self._ensure_stream()
            try:
                stream.write(line)
                stream.flush()
            except OSError:
                self._reset()
                raise

    def close(self) -> None:
        with self._lock:
            self._reset()

    def _ensure_stream(self) -> IO[str]:
        if self._stream is not None:
            return self._stream
        assert self._path is not None
        if self._path.exists() and stat.S_ISFIFO(self._path.stat().st_mode):
            fd = os.open(self._path, os.O_WRONLY | os.O_NONBLOCK)
            os.set_blocking(fd, True)
            self._stream = os.fdopen(fd, "w", encoding="utf-8")
        else:
            self._stream = self._path.open("a", encoding="utf-8")
        self._owns_stream = True
        logger.info("Opened collaborator channel %s", self._path)
        return self._stream

    def _reset(self) -> None:
        if self._owns_stream and self._stream is not None:
            try:
                self._stream.close()
            except OSError as exc:
                logger.debug("Closing collaborator channel failed: %s", exc)
            self._stream = None
            self._owns_stream = False


# =============================================================================
# Outbound: Server-Sent Events
# =============================================================================


class EventBroadcaster:
    """Fans notifications out to every connected SSE subscriber.

    Must be called on the event loop that owns the subscriber queues.
    """

    def __init__(self, max_queue: int = 256) -> None:
        self._subscribers: set[asyncio.Queue[JSON]] = set()
        self._max_queue = max_queue

    def __call__(self, message: JSON) -> None:
        if not self._subscribers:
            raise CollaboratorUnavailableError("No event stream subscribers")
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Event subscriber queue full; dropping %s", message.get("method"))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[JSON]:
        queue: asyncio.Queue[JSON] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        logger.info("Event subscriber connected (%d total)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[JSON]) -> None:
        self._subscribers.discard(queue)
        logger.info("Event subscriber disconnected (%d left)", len(self._subscribers))


# =============================================================================
# Inbound: answers from the UI host (stdio mode)
# =============================================================================


class CollaboratorReader:
    """Applies resolve/cancel messages from a FIFO or file to the broker.

    Reading happens on a daemon thread; settlement is scheduled onto the
    broker's event loop.
    """

    def __init__(self, broker: CorrelationBroker, path: Path) -> None:
        self.broker = broker
        self.path = path
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._thread = threading.Thread(target=self._run, name="askloop-collaborator-in", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def handle_line(self, line: str) -> bool:
        """Parse one inbound line and schedule its effect.

        Returns True if the message was understood.
        """
        line = line.strip()
        if not line:
            return False
        try:
            msg = json.loads(line)
        except (ValueError, RecursionError) as exc:
            logger.warning("Dropping malformed collaborator line: %s", exc)
            return False
        if not isinstance(msg, dict) or not isinstance(msg.get("params"), dict):
            logger.warning("Dropping collaborator message without params object")
            return False

        method = msg.get("method")
        params: dict[str, Any] = msg["params"]
        request_id = params.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            logger.warning("Dropping collaborator %s without requestId", method)
            return False

        if method == "resolve":
            self._schedule(self.broker.resolve, request_id, params.get("value"))
            return True
        if method == "cancel":
            self._schedule(self.broker.cancel, request_id)
            return True
        logger.warning("Unknown collaborator method: %s", method)
        return False

    def _schedule(self, func: Any, *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No loop attached; dropping collaborator message")
            return
        loop.call_soon_threadsafe(func, *args)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                with self.path.open("r", encoding="utf-8") as stream:
                    for line in stream:
                        self.handle_line(line)
                        if self._stop.is_set():
                            return
                # A FIFO hits EOF whenever its writer goes away; wait for the next one.
                if not stat.S_ISFIFO(self.path.stat().st_mode):
                    return
            except OSError as exc:
                logger.error("Collaborator input %s unreadable: %s", self.path, exc)
                return
