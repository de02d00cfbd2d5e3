"""Tests for the command-line entry point."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from askloop import __version__
from askloop.__main__ import build_dispatcher, build_parser, main
from askloop.settings import settings


class TestParser:
    """Tests for the argument parser."""

    def test_defaults_come_from_settings(self) -> None:
        """Flag defaults come from the environment-backed settings."""
        args = build_parser().parse_args([])
        assert args.http is False
        assert args.host == settings.host
        assert args.port == settings.port
        assert args.timeout == settings.waiter_timeout_seconds

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--version"])
        assert __version__ in capsys.readouterr().out


class TestMain:
    """Tests for main()."""

    def test_stdio_mode(self) -> None:
        """Flags override settings before the stdio server starts."""
        serve = AsyncMock()
        with patch("askloop.__main__.configure_logging"), patch("askloop.__main__.serve_stdio", new=serve):
            main(["--timeout", "12", "--collaborator-in", "/tmp/askloop-in"])

        cfg = serve.call_args.args[0]
        assert cfg.waiter_timeout_seconds == 12
        assert cfg.collaborator_in == Path("/tmp/askloop-in")

    def test_http_mode(self) -> None:
        """HTTP mode hands the app to uvicorn."""
        with patch("askloop.__main__.configure_logging"), patch("askloop.__main__.uvicorn.run") as run:
            main(["--http", "--port", "4000", "--log-level", "DEBUG"])

        assert run.call_args.kwargs["port"] == 4000
        assert run.call_args.kwargs["log_level"] == "debug"

    def test_stderr_in_use_when_notifications_default_to_stderr(self) -> None:
        """With an inbound channel and no outbound path, stderr belongs to notifications."""
        with patch("askloop.__main__.configure_logging") as configure, patch(
            "askloop.__main__.serve_stdio", new=AsyncMock()
        ):
            main(["--collaborator-in", "/tmp/askloop-in"])
        assert configure.call_args.kwargs["stderr_in_use"] is True

    def test_stderr_free_with_explicit_out_channel_or_http(self) -> None:
        """An explicit outbound path or HTTP mode leaves stderr free for logs."""
        with patch("askloop.__main__.configure_logging") as configure, patch(
            "askloop.__main__.serve_stdio", new=AsyncMock()
        ):
            main(["--collaborator-in", "/tmp/askloop-in", "--collaborator-out", "/tmp/askloop-out"])
        assert configure.call_args.kwargs["stderr_in_use"] is False

        with patch("askloop.__main__.configure_logging") as configure, patch("askloop.__main__.uvicorn.run"):
            main(["--http", "--collaborator-in", "/tmp/askloop-in"])
        assert configure.call_args.kwargs["stderr_in_use"] is False

    def test_rejects_non_positive_timeout(self) -> None:
        """A zero timeout is rejected before anything starts."""
        with patch("askloop.__main__.configure_logging"):
            with pytest.raises(SystemExit):
                main(["--timeout", "0"])


def test_build_dispatcher_uses_timeout() -> None:
    from dataclasses import replace

    dispatcher = build_dispatcher(replace(settings, waiter_timeout_seconds=7.0))
    assert dispatcher.broker.timeout_seconds == 7.0
    assert dispatcher.broker.has_collaborator is False
    assert len(dispatcher.registry) == 4
