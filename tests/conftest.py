"""Shared fixtures for nsticky tests."""

import shutil
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Make the nsticky package importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from nsticky.config import DaemonConfig
from nsticky.reconciler import Reconciler
from nsticky.registry import Registry


@pytest.fixture
def short_tmp():
    """Temporary directory with a path short enough for unix sockets."""
    path = Path(tempfile.mkdtemp(prefix="ns-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def window_locations():
    """window id -> workspace id the mock niri reports for each window."""
    return {}


@pytest.fixture
def mock_niri(window_locations):
    """Mock ResilientNiriConnection with every command succeeding."""
    conn = MagicMock()
    conn.is_connected = True
    conn.latest_active_workspace = None
    conn.move_window = AsyncMock(return_value=None)
    conn.active_workspace = AsyncMock(return_value=1)
    conn.focused_window = AsyncMock(return_value=None)
    conn.windows = AsyncMock(side_effect=lambda: dict(window_locations))
    conn.ensure_workspace = AsyncMock(return_value=99)
    conn.window_workspace = MagicMock(side_effect=window_locations.get)
    return conn


@pytest.fixture
def registry():
    return Registry()


@pytest.fixture
def reconciler(mock_niri, registry):
    """Reconciler driven directly (dispatch/handle_event), no actor task."""
    return Reconciler(mock_niri, registry)


@pytest.fixture
def config(short_tmp):
    return DaemonConfig(
        niri_socket=short_tmp / "niri.sock",
        control_socket=short_tmp / "nsticky.sock",
        command_timeout=0.5,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_max_attempts=3,
    )
