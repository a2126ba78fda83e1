"""
Integration tests for ResilientNiriConnection against a fake niri socket.

Tests cover the event stream handshake, command round-trips, reconnection
with backoff, fail-fast behaviour while disconnected and timeouts.
"""

import asyncio

import pytest

from nsticky import connection as connection_module
from nsticky.connection import ResilientNiriConnection
from nsticky.errors import ManagerTimeout, ManagerUnavailable, NStickyError, WindowGone
from nsticky.models import (
    ManagerConnected,
    ManagerDisconnected,
    WindowClosed,
    WindowOpened,
    WorkspaceActivated,
)


async def next_event(stream, timeout: float = 2.0):
    return await asyncio.wait_for(stream.__anext__(), timeout)


@pytest.fixture
def connection(config):
    conn = ResilientNiriConnection(config)
    yield conn
    conn.close()


async def _connect(connection):
    """Open the event stream and drain the initial window snapshot."""
    stream = connection.subscribe_events()
    assert await next_event(stream) == ManagerConnected()
    assert await next_event(stream) == WindowOpened(window_id=10, workspace_id=1)
    assert await next_event(stream) == WindowOpened(window_id=11, workspace_id=1)
    return stream


def _add_titled_windows(fake_niri, count: int, title_length: int = 400) -> None:
    for window_id in range(100, 100 + count):
        fake_niri.windows[window_id] = 2
        fake_niri.titles[window_id] = "t" * title_length


class TestEventStream:
    """Test event subscription."""

    @pytest.mark.asyncio
    async def test_initial_snapshot(self, fake_niri, connection):
        """Test connect yields ManagerConnected then one WindowOpened per window."""
        stream = await _connect(connection)
        try:
            assert connection.is_connected
            assert connection.latest_active_workspace == 1
            assert connection.window_workspace(11) == 1
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_live_events(self, fake_niri, connection):
        """Test events emitted by niri arrive decoded and update the hint."""
        stream = await _connect(connection)
        try:
            await fake_niri.focus_workspace(2)
            assert await next_event(stream) == WorkspaceActivated(workspace_id=2, focused=True)
            assert connection.latest_active_workspace == 2

            await fake_niri.close_window(11)
            assert await next_event(stream) == WindowClosed(window_id=11)
            assert connection.window_workspace(11) is None
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_reconnect_after_stream_loss(self, fake_niri, connection):
        """Test a dropped stream yields ManagerDisconnected then reconnects."""
        stream = await _connect(connection)
        try:
            fake_niri.drop_event_streams()

            assert isinstance(await next_event(stream), ManagerDisconnected)
            assert not connection.is_connected
            assert await next_event(stream) == ManagerConnected()
            assert connection.is_connected
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_large_window_snapshot(self, fake_niri, connection):
        """Test a WindowsChanged line well above 64 KiB is decoded."""
        _add_titled_windows(fake_niri, 300)
        stream = connection.subscribe_events()
        try:
            assert await next_event(stream) == ManagerConnected()
            events = [await next_event(stream) for _ in range(len(fake_niri.windows))]

            assert {e.window_id for e in events} == set(fake_niri.windows)
            assert connection.window_workspace(399) == 2
            assert await connection.windows() == fake_niri.windows
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_line_over_limit_is_stream_loss(self, fake_niri, connection, monkeypatch):
        """Test a line beyond the reader limit drops the stream instead of raising."""
        monkeypatch.setattr(connection_module, "NIRI_READ_LIMIT", 4096)
        _add_titled_windows(fake_niri, 50)
        stream = connection.subscribe_events()
        try:
            assert await next_event(stream) == ManagerConnected()

            event = await next_event(stream)

            assert isinstance(event, ManagerDisconnected)
            assert "limit" in event.reason
            assert not connection.is_connected
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, config):
        """Test the stream raises ManagerUnavailable when niri never appears."""
        connection = ResilientNiriConnection(config)
        stream = connection.subscribe_events()

        with pytest.raises(ManagerUnavailable, match="after 3 attempts"):
            await next_event(stream)

    @pytest.mark.asyncio
    async def test_close_ends_stream(self, fake_niri, connection):
        """Test close() makes the iterator finish instead of reconnecting."""
        stream = await _connect(connection)

        connection.close()

        with pytest.raises(StopAsyncIteration):
            await next_event(stream)


class TestCommands:
    """Test requests on short-lived connections."""

    @pytest.mark.asyncio
    async def test_fail_fast_when_disconnected(self, fake_niri, connection):
        """Test commands fail with ManagerUnavailable before the stream is up."""
        with pytest.raises(ManagerUnavailable):
            await connection.move_window(10, 2)

        assert fake_niri.moves == []

    @pytest.mark.asyncio
    async def test_queries(self, fake_niri, connection):
        stream = await _connect(connection)
        try:
            assert await connection.active_workspace() == 1
            assert await connection.focused_window() == 10
            assert await connection.windows() == {10: 1, 11: 1}

            fake_niri.focused_window = None
            assert await connection.focused_window() is None
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_move_window(self, fake_niri, connection):
        """Test MoveWindowToWorkspace is sent without focus and the cache updated."""
        stream = await _connect(connection)
        try:
            await connection.move_window(10, 3)

            assert fake_niri.moves == [(10, 3)]
            assert connection.window_workspace(10) == 3
            action = fake_niri.requests[-1]["Action"]["MoveWindowToWorkspace"]
            assert action["focus"] is False
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_move_unknown_window(self, fake_niri, connection):
        """Test a window missing from the stream cache raises WindowGone."""
        stream = await _connect(connection)
        try:
            with pytest.raises(WindowGone) as exc_info:
                await connection.move_window(77, 2)
            assert exc_info.value.window_id == 77
            assert fake_niri.moves == []
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_niri_reports_window_gone(self, fake_niri, connection):
        """Test an Err reply about the window maps to WindowGone."""
        stream = await _connect(connection)
        try:
            del fake_niri.windows[11]

            with pytest.raises(WindowGone):
                await connection.move_window(11, 2)
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_other_move_error_keeps_window(self, fake_niri, connection):
        """Test an Err mentioning the window is not WindowGone while niri still lists it."""
        stream = await _connect(connection)
        try:
            fake_niri.move_error = "window 10 cannot move: workspace reference not found"

            with pytest.raises(NStickyError) as exc_info:
                await connection.move_window(10, 42)

            assert not isinstance(exc_info.value, WindowGone)
            assert connection.window_workspace(10) == 1
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_reply_over_limit_is_unavailable(self, fake_niri, connection, monkeypatch):
        """Test a reply line beyond the reader limit maps to ManagerUnavailable."""
        stream = await _connect(connection)
        try:
            monkeypatch.setattr(connection_module, "NIRI_READ_LIMIT", 4096)
            _add_titled_windows(fake_niri, 50)

            with pytest.raises(ManagerUnavailable, match="too large"):
                await connection.windows()
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_command_timeout(self, fake_niri, connection):
        """Test a silent niri produces ManagerTimeout."""
        stream = await _connect(connection)
        try:
            fake_niri.silent = True

            with pytest.raises(ManagerTimeout):
                await connection.workspaces()
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_ensure_workspace_names_empty_workspace(self, fake_niri, connection):
        """Test the stage workspace is created on the last empty workspace."""
        stream = await _connect(connection)
        try:
            workspace_id = await connection.ensure_workspace("stage")
            again = await connection.ensure_workspace("stage")

            assert workspace_id == 3
            assert again == 3
            assert fake_niri.workspaces[2]["name"] == "stage"
            renames = [r for r in fake_niri.requests if isinstance(r, dict) and "SetWorkspaceName" in r["Action"]]
            assert len(renames) == 1
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_no_socket_configured(self, config):
        """Test a missing NIRI_SOCKET fails the handshake cleanly."""
        connection = ResilientNiriConnection(config.model_copy(update={"niri_socket": None}))

        with pytest.raises(ManagerUnavailable):
            await connection.connect_with_retry(max_attempts=1)
