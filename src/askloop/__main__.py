"""askloop - human-in-the-loop JSON-RPC tool server.

Usage:
    askloop                         Serve JSON-RPC over stdin/stdout (default)
    askloop --http                  Serve JSON-RPC over HTTP with an SSE event stream
    askloop --help                  Show this help message

In stdio mode, out-of-band notifications for the UI host go to stderr (or
--collaborator-out) and its answers are read from --collaborator-in. With
no inbound channel every question goes straight to an OS-native dialog.

Environment Variables:
    ASKLOOP_HOST                HTTP host (default: 127.0.0.1)
    ASKLOOP_PORT                HTTP port (default: 3456)
    ASKLOOP_WAITER_TIMEOUT      Seconds to wait for the UI host (default: 30)
    ASKLOOP_DIALOG_TIMEOUT      Seconds a native dialog may stay open (default: 300)
    ASKLOOP_COLLABORATOR_OUT    Path for outbound notifications (stdio mode)
    ASKLOOP_COLLABORATOR_IN     Path for inbound answers (stdio mode)
    ASKLOOP_LOG_LEVEL           Logging level (default: INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace
from pathlib import Path

import uvicorn

from . import __version__
from .broker import CorrelationBroker
from .channels import CollaboratorReader, LineSink
from .fallback import FallbackDialogResolver
from .handlers import build_default_registry
from .http_rpc import create_app
from .logging_setup import configure_logging
from .rpc_server import Dispatcher, StdioServer
from .settings import Settings, settings
from .supervisor import TimeoutSupervisor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="askloop",
        description="Human-in-the-loop JSON-RPC tool server",
        epilog="""
Examples:
  askloop                                  Serve over stdio, answers via native dialogs
  askloop --collaborator-in /tmp/ui.fifo   Read UI host answers from a FIFO
  askloop --http --port 3456               Serve over HTTP on localhost
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Serve over HTTP instead of stdio",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"HTTP host (default: {settings.host})",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.port,
        help=f"HTTP port (default: {settings.port})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.waiter_timeout_seconds,
        help=f"Seconds to wait for the UI host before falling back (default: {settings.waiter_timeout_seconds:g})",
    )
    parser.add_argument(
        "--collaborator-in",
        type=Path,
        default=settings.collaborator_in,
        help="FIFO or file the UI host writes resolve/cancel messages to",
    )
    parser.add_argument(
        "--collaborator-out",
        type=Path,
        default=settings.collaborator_out,
        help="FIFO or file for outbound notifications (default: stderr)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.log_level.upper(),
        help=f"Logging level (default: {settings.log_level})",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def build_dispatcher(cfg: Settings) -> Dispatcher:
    broker = CorrelationBroker(supervisor=TimeoutSupervisor(cfg.waiter_timeout_seconds))
    resolver = FallbackDialogResolver(dialog_timeout=cfg.dialog_timeout_seconds)
    return Dispatcher(build_default_registry(), broker, resolver, cfg=cfg)


async def serve_stdio(cfg: Settings) -> None:
    dispatcher = build_dispatcher(cfg)
    reader = None
    if cfg.collaborator_in is not None:
        dispatcher.broker.attach(LineSink(cfg.collaborator_out))
        reader = CollaboratorReader(dispatcher.broker, cfg.collaborator_in)
        reader.start()
        logger.info(
            "Collaborator attached: out=%s in=%s",
            cfg.collaborator_out or "stderr",
            cfg.collaborator_in,
        )
    else:
        logger.info("No collaborator input channel; questions go to native dialogs")

    try:
        await StdioServer(dispatcher).serve()
    finally:
        if reader is not None:
            reader.stop()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the askloop server."""
    args = build_parser().parse_args(argv)
    if args.timeout <= 0:
        raise SystemExit("--timeout must be positive")

    cfg = replace(
        settings,
        host=args.host,
        port=args.port,
        waiter_timeout_seconds=args.timeout,
        collaborator_in=args.collaborator_in,
        collaborator_out=args.collaborator_out,
        log_level=args.log_level,
    )
    # The default outbound channel is stderr once a UI host is attached in stdio mode.
    notifications_on_stderr = (
        not args.http and cfg.collaborator_in is not None and cfg.collaborator_out is None
    )
    configure_logging(cfg, stderr_in_use=notifications_on_stderr)
    logger.info("askloop %s starting (%s)", __version__, "http" if args.http else "stdio")

    if args.http:
        uvicorn.run(
            create_app(cfg),
            host=cfg.host,
            port=cfg.port,
            log_level=cfg.log_level.lower(),
        )
        return

    asyncio.run(serve_stdio(cfg))


if __name__ == "__main__":
    main()
