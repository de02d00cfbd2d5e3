"""Logging configuration.

stdout carries JSON-RPC responses and stderr carries out-of-band
notifications by default, so log records go to a rotating file.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler

from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(
    cfg: Settings | None = None,
    *,
    level: str | None = None,
    stderr_in_use: bool = False,
) -> None:
    """Install the file handler (and the optional stderr mirror) on the root logger.

    Safe to call more than once; handlers installed by a previous call are replaced.
    When stderr_in_use is set, stderr carries collaborator notifications and the
    mirror stays off even if ASKLOOP_LOG_STDERR asks for it.
    """
    cfg = cfg or default_settings
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_askloop", False):
            root.removeHandler(handler)
            handler.close()

    cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            cfg.log_path,
            maxBytes=cfg.log_max_bytes,
            backupCount=cfg.log_backup_count,
            encoding="utf-8",
        )
    ]
    mirror_stderr = cfg.log_stderr and not stderr_in_use
    if mirror_stderr:
        handlers.append(logging.StreamHandler(sys.stderr))

    formatter = logging.Formatter(_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._askloop = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel((level or cfg.log_level).upper())
    if cfg.log_stderr and not mirror_stderr:
        logger.warning("ASKLOOP_LOG_STDERR ignored: stderr carries collaborator notifications")
