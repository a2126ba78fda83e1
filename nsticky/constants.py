"""Centralized paths and protocol constants for nsticky.

Single source of truth for file paths, socket locations and timing
defaults used across the daemon and the CLI.
"""

import os
from pathlib import Path
from typing import Final


class ConfigPaths:
    """Centralized configuration paths.

    All paths are computed once at import time based on the user's home
    directory and runtime directory.
    """

    HOME: Final[Path] = Path.home()
    CONFIG_DIR: Final[Path] = HOME / ".config" / "nsticky"
    CONFIG_FILE: Final[Path] = CONFIG_DIR / "config.json"

    # Control socket lives in the per-user runtime dir when available
    RUNTIME_DIR: Final[Path] = Path(
        os.environ.get("XDG_RUNTIME_DIR") or f"/tmp/nsticky-{os.getuid()}"
    )
    CONTROL_SOCKET_PATH: Final[Path] = RUNTIME_DIR / "nsticky.sock"


# Environment variables
NIRI_SOCKET_ENV: Final[str] = "NIRI_SOCKET"
CONTROL_SOCKET_ENV: Final[str] = "NSTICKY_SOCKET"
ENV_PREFIX: Final[str] = "NSTICKY_"

# Reserved workspace for staged windows
STAGE_WORKSPACE: Final[str] = "stage"

# Timing defaults (seconds)
COMMAND_TIMEOUT: Final[float] = 3.0
RECONNECT_INITIAL_DELAY: Final[float] = 0.1
RECONNECT_MAX_DELAY: Final[float] = 5.0
RECONNECT_MAX_ATTEMPTS: Final[int] = 10
CLIENT_TIMEOUT: Final[float] = 10.0

# StreamReader line limit for niri sockets; Windows replies and
# WindowsChanged snapshots are single lines that grow with window titles
NIRI_READ_LIMIT: Final[int] = 16 * 1024 * 1024

# Reconciler queue bound (control commands + niri events waiting for the actor)
WORK_QUEUE_SIZE: Final[int] = 256
