"""niri IPC connection manager with resilient reconnection.

Handles the long-lived event stream connection (with bounded exponential
backoff reconnection) and short-lived request connections for commands
and queries. While the event stream is down every command fails fast
with ManagerUnavailable instead of queuing.

Wire format: newline-delimited JSON over the unix socket in $NIRI_SOCKET.
Requests are JSON values (``"Windows"``, ``{"Action": {...}}``) and every
reply is ``{"Ok": ...}`` or ``{"Err": "message"}``.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .config import DaemonConfig
from .constants import NIRI_READ_LIMIT
from .errors import ManagerTimeout, ManagerUnavailable, NStickyError, WindowGone
from .models import (
    ManagerConnected,
    ManagerDisconnected,
    ManagerEvent,
    WindowClosed,
    WindowFocused,
    WindowOpened,
    WorkspaceActivated,
)

logger = logging.getLogger(__name__)


def encode_request(payload: Any) -> bytes:
    """Serialize one niri request as a JSON line."""
    return json.dumps(payload).encode() + b"\n"


def decode_reply(line: bytes) -> Any:
    """Decode one niri reply line.

    Returns:
        The ``Ok`` payload

    Raises:
        NStickyError: If niri answered with ``Err`` or the reply is malformed
    """
    try:
        reply = json.loads(line)
    except json.JSONDecodeError as e:
        raise NStickyError(f"Malformed reply from niri: {e}") from e

    if isinstance(reply, dict):
        if "Ok" in reply:
            return reply["Ok"]
        if "Err" in reply:
            raise NStickyError(f"niri error: {reply['Err']}")

    raise NStickyError(f"Unexpected reply from niri: {reply!r}")


def decode_event(message: Dict[str, Any]) -> List[ManagerEvent]:
    """Translate one niri event-stream message into typed events.

    Unknown messages decode to an empty list: the schema belongs to niri and
    new event kinds must not break the daemon.
    """
    try:
        if "WorkspaceActivated" in message:
            data = message["WorkspaceActivated"]
            return [WorkspaceActivated(workspace_id=data["id"], focused=bool(data.get("focused", False)))]

        if "WindowOpenedOrChanged" in message:
            window = message["WindowOpenedOrChanged"]["window"]
            return [WindowOpened(window_id=window["id"], workspace_id=window.get("workspace_id"))]

        if "WindowsChanged" in message:
            return [
                WindowOpened(window_id=window["id"], workspace_id=window.get("workspace_id"))
                for window in message["WindowsChanged"]["windows"]
            ]

        if "WindowClosed" in message:
            return [WindowClosed(window_id=message["WindowClosed"]["id"])]

        if "WindowFocusChanged" in message:
            return [WindowFocused(window_id=message["WindowFocusChanged"].get("id"))]

    except (KeyError, TypeError) as e:
        logger.warning(f"Ignoring malformed niri event {message!r}: {e}")

    return []


def _focused_workspace(workspaces: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for ws in workspaces:
        if ws.get("is_focused"):
            return ws
    return None


class ResilientNiriConnection:
    """Manages niri IPC with automatic reconnection and fail-fast commands."""

    def __init__(self, config: DaemonConfig) -> None:
        """Initialize connection manager.

        Args:
            config: Daemon configuration (socket path, timeouts, backoff)
        """
        self.config = config
        self.socket_path: Optional[Path] = config.niri_socket
        self.is_shutting_down = False
        self.reconnect_delay = config.reconnect_initial_delay

        # Latest focused workspace seen on the event stream
        self.latest_active_workspace: Optional[int] = None

        self._connected = False
        self._event_writer: Optional[asyncio.StreamWriter] = None
        # window id -> workspace id, maintained from the event stream
        self._window_workspaces: Dict[int, Optional[int]] = {}
        self._windows_known = False

    @property
    def is_connected(self) -> bool:
        """True while the event stream is up."""
        return self._connected and not self.is_shutting_down

    # ------------------------------------------------------------------
    # Low-level request plumbing
    # ------------------------------------------------------------------

    async def _open(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if not self.socket_path:
            raise ManagerUnavailable("NIRI_SOCKET is not set; is niri running?")
        try:
            return await asyncio.open_unix_connection(str(self.socket_path), limit=NIRI_READ_LIMIT)
        except OSError as e:
            raise ManagerUnavailable(f"Cannot connect to niri at {self.socket_path}: {e}") from e

    async def _roundtrip(self, payload: Any) -> Any:
        reader, writer = await self._open()
        try:
            writer.write(encode_request(payload))
            await writer.drain()
            line = await reader.readline()
        except OSError as e:
            raise ManagerUnavailable(f"niri connection failed: {e}") from e
        except ValueError as e:
            # StreamReader line limit exceeded
            raise ManagerUnavailable(f"niri reply too large: {e}") from e
        finally:
            writer.close()

        if not line:
            raise ManagerUnavailable("niri closed the connection without replying")
        return decode_reply(line)

    async def request(self, payload: Any) -> Any:
        """Send one request on a fresh connection and return the Ok payload.

        Raises:
            ManagerUnavailable: If the event stream is down or the socket fails
            ManagerTimeout: If niri does not answer within command_timeout
            NStickyError: If niri answers with an error
        """
        if not self.is_connected:
            raise ManagerUnavailable("niri connection is down")

        try:
            return await asyncio.wait_for(self._roundtrip(payload), timeout=self.config.command_timeout)
        except asyncio.TimeoutError:
            raise ManagerTimeout(
                f"niri did not answer within {self.config.command_timeout:.1f}s"
            ) from None

    # ------------------------------------------------------------------
    # Commands and queries
    # ------------------------------------------------------------------

    async def move_window(self, window_id: int, workspace_id: int) -> None:
        """Move a window to a workspace without focusing it.

        Raises:
            WindowGone: If niri no longer lists the window
            ManagerUnavailable, ManagerTimeout: On connection problems
            NStickyError: If niri rejects the move for another reason
        """
        if self._windows_known and window_id not in self._window_workspaces:
            raise WindowGone(f"Window {window_id} not found in niri", window_id=window_id)

        action = {
            "Action": {
                "MoveWindowToWorkspace": {
                    "window_id": window_id,
                    "reference": {"Id": workspace_id},
                    "focus": False,
                }
            }
        }
        try:
            await self.request(action)
        except (ManagerUnavailable, ManagerTimeout):
            raise
        except NStickyError as e:
            # niri's Err text is not a stable contract; ask whether the window still exists
            if window_id not in await self.windows():
                raise WindowGone(f"Window {window_id} not found in niri", window_id=window_id) from e
            raise

        self._window_workspaces[window_id] = workspace_id
        logger.debug(f"Moved window {window_id} to workspace {workspace_id}")

    async def workspaces(self) -> List[Dict[str, Any]]:
        reply = await self.request("Workspaces")
        return reply["Workspaces"]

    async def active_workspace(self) -> int:
        """Return the id of niri's focused workspace."""
        ws = _focused_workspace(await self.workspaces())
        if ws is None:
            raise NStickyError("niri reports no focused workspace")
        self.latest_active_workspace = ws["id"]
        return ws["id"]

    async def focused_window(self) -> Optional[int]:
        """Return the id of the focused window, or None."""
        reply = await self.request("FocusedWindow")
        window = reply.get("FocusedWindow") if isinstance(reply, dict) else None
        return window["id"] if window else None

    async def windows(self) -> Dict[int, Optional[int]]:
        """Return all live windows mapped to their workspace ids."""
        reply = await self.request("Windows")
        windows = {w["id"]: w.get("workspace_id") for w in reply["Windows"]}
        self._window_workspaces = dict(windows)
        self._windows_known = True
        return windows

    def window_workspace(self, window_id: int) -> Optional[int]:
        """Last known workspace of a window (None if unknown)."""
        return self._window_workspaces.get(window_id)

    async def ensure_workspace(self, name: str) -> int:
        """Resolve a workspace by name, naming an empty one if it does not exist.

        The empty trailing workspace niri keeps on the focused output is
        claimed and given the name.
        """
        workspaces = await self.workspaces()
        for ws in workspaces:
            if ws.get("name") == name:
                return ws["id"]

        focused = _focused_workspace(workspaces)
        output = focused.get("output") if focused else None
        empty = [
            ws for ws in workspaces
            if ws.get("output") == output and ws.get("active_window_id") is None
        ]
        if not empty:
            raise NStickyError(f"No empty workspace available to create '{name}'")
        candidate = max(empty, key=lambda ws: ws.get("idx", 0))

        await self.request({
            "Action": {
                "SetWorkspaceName": {
                    "name": name,
                    "workspace": {"Id": candidate["id"]},
                }
            }
        })
        logger.info(f"Created workspace '{name}' (id {candidate['id']}) on output {output}")
        return candidate["id"]

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    async def connect_with_retry(
        self, max_attempts: Optional[int] = None
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the event stream with exponential backoff retry.

        Returns:
            Reader/writer of a connection already switched to event-stream mode

        Raises:
            ManagerUnavailable: If connection fails after max attempts
        """
        max_attempts = max_attempts or self.config.reconnect_max_attempts
        attempt = 0
        delay = self.reconnect_delay

        while attempt < max_attempts and not self.is_shutting_down:
            writer: Optional[asyncio.StreamWriter] = None
            try:
                logger.info(f"Attempting to connect to niri (attempt {attempt + 1}/{max_attempts})")
                reader, writer = await self._open()
                writer.write(encode_request("EventStream"))
                await writer.drain()
                line = await asyncio.wait_for(reader.readline(), timeout=self.config.command_timeout)
                if not line:
                    raise ManagerUnavailable("niri closed the connection during handshake")
                decode_reply(line)

                self.reconnect_delay = self.config.reconnect_initial_delay
                return reader, writer

            except (NStickyError, OSError, ValueError, asyncio.TimeoutError) as e:
                if writer is not None:
                    writer.close()
                logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
                attempt += 1

                if attempt < max_attempts:
                    logger.debug(f"Waiting {delay:.1f}s before retry...")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.config.reconnect_max_delay)

        raise ManagerUnavailable(f"Failed to connect to niri after {max_attempts} attempts")

    def _observe(self, message: Dict[str, Any], events: List[ManagerEvent]) -> None:
        """Update the window cache and active-workspace hint from the stream."""
        if "WindowsChanged" in message:
            self._window_workspaces.clear()
            self._windows_known = True

        if "WorkspacesChanged" in message:
            ws = _focused_workspace(message["WorkspacesChanged"].get("workspaces", []))
            if ws is not None:
                self.latest_active_workspace = ws["id"]

        for event in events:
            if isinstance(event, WorkspaceActivated) and event.focused:
                self.latest_active_workspace = event.workspace_id
            elif isinstance(event, WindowOpened):
                self._window_workspaces[event.window_id] = event.workspace_id
            elif isinstance(event, WindowClosed):
                self._window_workspaces.pop(event.window_id, None)

    async def subscribe_events(self) -> AsyncIterator[ManagerEvent]:
        """Yield typed niri events forever, reconnecting on loss.

        Yields ManagerConnected after every successful (re)connection and
        ManagerDisconnected when the stream drops (including a line longer
        than the reader limit). Terminates by raising
        ManagerUnavailable once reconnection attempts are exhausted, or
        returns when the connection is closed for shutdown.
        """
        while not self.is_shutting_down:
            reader, writer = await self.connect_with_retry()
            self._event_writer = writer
            self._window_workspaces.clear()
            self._windows_known = False
            self._connected = True
            logger.info(f"Subscribed to niri event stream at {self.socket_path}")
            yield ManagerConnected()

            reason = "niri closed the event stream"
            try:
                while True:
                    line = await reader.readline()
                    if not line:
                        break
                    try:
                        message = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Skipping undecodable niri event line: {e}")
                        continue
                    if not isinstance(message, dict):
                        continue

                    events = decode_event(message)
                    self._observe(message, events)
                    for event in events:
                        yield event

            except (OSError, ValueError) as e:
                reason = str(e) or type(e).__name__

            finally:
                self._connected = False
                self._event_writer = None
                writer.close()

            if self.is_shutting_down:
                logger.info("niri event stream stopped (shutdown)")
                return

            logger.warning(f"Lost niri event stream: {reason}; reconnecting")
            yield ManagerDisconnected(reason=reason)

    def close(self) -> None:
        """Stop the event stream and refuse further commands."""
        self.is_shutting_down = True
        if self._event_writer is not None:
            self._event_writer.close()
            self._event_writer = None
        logger.info("Closed niri connection")
