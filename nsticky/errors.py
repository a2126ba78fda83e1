"""Failure taxonomy shared by the daemon and the CLI.

Each error carries a JSON-RPC application error code so the control server
can report the exact failure kind and the CLI can reconstruct it.
"""

from typing import Any, Dict, Optional


# JSON-RPC 2.0 standard error codes
PARSE_ERROR = -32700       # Invalid JSON
INVALID_REQUEST = -32600   # Not valid JSON-RPC request
METHOD_NOT_FOUND = -32601  # Method doesn't exist
INVALID_PARAMS = -32602    # Invalid method parameters
INTERNAL_ERROR = -32603    # Server internal error

# Application-specific error codes
MANAGER_UNAVAILABLE = 1001
MANAGER_TIMEOUT = 1002
WINDOW_GONE = 1003
NOT_STICKY = 1004
NO_FOCUSED_WINDOW = 1005


class NStickyError(Exception):
    """Base exception for nsticky failures."""

    code: int = INTERNAL_ERROR
    kind: str = "InternalError"

    def __init__(self, message: str, window_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.window_id = window_id

    def to_data(self) -> Dict[str, Any]:
        """Structured payload for the JSON-RPC error ``data`` member."""
        data: Dict[str, Any] = {"kind": self.kind}
        if self.window_id is not None:
            data["window_id"] = self.window_id
        return data


class ManagerUnavailable(NStickyError):
    """Raised when the niri connection is down; commands fail fast."""

    code = MANAGER_UNAVAILABLE
    kind = "ManagerUnavailable"


class ManagerTimeout(NStickyError):
    """Raised when niri does not acknowledge a command in time."""

    code = MANAGER_TIMEOUT
    kind = "ManagerTimeout"


class WindowGone(NStickyError):
    """Raised when niri reports the target window no longer exists."""

    code = WINDOW_GONE
    kind = "WindowGone"


class NotSticky(NStickyError):
    """Raised when staging a window that is not tracked as sticky."""

    code = NOT_STICKY
    kind = "NotSticky"


class NoFocusedWindow(NStickyError):
    """Raised when an --active command finds nothing focused."""

    code = NO_FOCUSED_WINDOW
    kind = "NoFocusedWindow"


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (ManagerUnavailable, ManagerTimeout, WindowGone, NotSticky, NoFocusedWindow)
}


def error_from_code(code: int, message: str, window_id: Optional[int] = None) -> NStickyError:
    """Rebuild a typed error from a JSON-RPC error object (client side)."""
    cls = _ERRORS_BY_CODE.get(code, NStickyError)
    return cls(message, window_id=window_id)
