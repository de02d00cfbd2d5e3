from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(name: str, default: float, min_val: float | None = None) -> float:
    """Get float from environment with optional minimum enforcement."""
    val = float(os.environ.get(name, str(default)))
    if min_val is not None and val < min_val:
        return min_val
    return val


def _env_path(name: str) -> Path | None:
    raw = os.environ.get(name)
    return Path(raw).expanduser() if raw else None


@dataclass(frozen=True)
class Settings:
    """Static settings for the tool server.

    Everything is local: stdio by default, HTTP bound to localhost when enabled.
    """

    server_name: str = "askloop"
    protocol_version: str = "2024-11-05"

    data_dir: Path = Path(os.environ.get("ASKLOOP_DATA_DIR", "~/.askloop")).expanduser()
    log_path: Path = data_dir / "askloop.log"
    log_level: str = os.environ.get("ASKLOOP_LOG_LEVEL", "INFO")
    log_max_bytes: int = int(os.environ.get("ASKLOOP_LOG_MAX_BYTES", str(1_000_000)))
    log_backup_count: int = int(os.environ.get("ASKLOOP_LOG_BACKUP_COUNT", "3"))
    # Stderr is the default out-of-band channel, so mirroring logs there is opt-in.
    log_stderr: bool = _env_bool("ASKLOOP_LOG_STDERR", False)

    host: str = os.environ.get("ASKLOOP_HOST", "127.0.0.1")
    port: int = int(os.environ.get("ASKLOOP_PORT", "3456"))

    # =========================================================================
    # Human-in-the-loop deadlines
    # =========================================================================
    # How long a pending waiter may wait for the UI host before the fallback
    # dialog takes over.
    waiter_timeout_seconds: float = _env_float("ASKLOOP_WAITER_TIMEOUT", 30.0, min_val=1.0)
    # Upper bound for one OS-native dialog process.
    dialog_timeout_seconds: float = _env_float("ASKLOOP_DIALOG_TIMEOUT", 300.0, min_val=5.0)

    # Out-of-band channel endpoints for stdio mode. When collaborator_in is
    # unset nobody can answer, so requests go straight to the fallback dialog.
    collaborator_out: Path | None = _env_path("ASKLOOP_COLLABORATOR_OUT")
    collaborator_in: Path | None = _env_path("ASKLOOP_COLLABORATOR_IN")


settings = Settings()
