"""Data models for the nsticky daemon.

Runtime events and placement records are plain dataclasses; everything
that crosses the control socket is a pydantic model so requests are
validated before they reach the reconciler.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# ============================================================================
# Manager events
# ============================================================================
# Typed events decoded from the niri event stream by the connection layer.


@dataclass(frozen=True)
class WorkspaceActivated:
    """A workspace became active; ``focused`` is True for the focused output."""

    workspace_id: int
    focused: bool = True


@dataclass(frozen=True)
class WindowOpened:
    """A window appeared or changed; carries its current workspace if known."""

    window_id: int
    workspace_id: Optional[int] = None


@dataclass(frozen=True)
class WindowClosed:
    """A window was destroyed."""

    window_id: int


@dataclass(frozen=True)
class WindowFocused:
    """Keyboard focus moved to a window, or to nothing."""

    window_id: Optional[int]


@dataclass(frozen=True)
class ManagerConnected:
    """The event stream (re)connected and niri's state should be re-read."""


@dataclass(frozen=True)
class ManagerDisconnected:
    """The event stream was lost; commands fail fast until reconnection."""

    reason: str = ""


ManagerEvent = Union[
    WorkspaceActivated,
    WindowOpened,
    WindowClosed,
    WindowFocused,
    ManagerConnected,
    ManagerDisconnected,
]


# ============================================================================
# Placement state machine
# ============================================================================


class PlacementState(str, Enum):
    """Relocation state of a tracked window."""

    SETTLED = "settled"
    MOVING = "moving"
    FAILED = "failed"


@dataclass
class WindowPlacement:
    """Where a window is believed to be and whether a move is in flight."""

    window_id: int
    workspace_id: Optional[int] = None
    state: PlacementState = PlacementState.SETTLED
    target_workspace: Optional[int] = None
    last_error: Optional[str] = None
    updated: datetime = field(default_factory=datetime.now)


class ToggleResult(str, Enum):
    """Outcome of Registry.toggle."""

    ADDED = "added"
    REMOVED = "removed"


# ============================================================================
# Control protocol models
# ============================================================================


class TargetKind(str, Enum):
    """What a stage/unstage request applies to."""

    WINDOW = "window"
    ACTIVE = "active"
    ALL = "all"


class WindowParams(BaseModel):
    """Parameters for add/remove."""

    window_id: int = Field(..., ge=0, description="niri window id")


class TargetParams(BaseModel):
    """Parameters for stage/unstage: a window id, "active" or "all"."""

    target: Union[Annotated[int, Field(ge=0)], Literal["active", "all"]] = Field(
        ..., description="Window id, 'active' or 'all'"
    )

    @property
    def kind(self) -> TargetKind:
        if isinstance(self.target, int):
            return TargetKind.WINDOW
        return TargetKind(self.target)

    @property
    def window_id(self) -> Optional[int]:
        return self.target if isinstance(self.target, int) else None


class OutcomeStatus(str, Enum):
    """Per-window result of a stage/unstage application."""

    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


class WindowOutcome(BaseModel):
    """Result of applying one command to one window."""

    window_id: int
    status: OutcomeStatus
    error: Optional[str] = Field(default=None, description="Failure kind, e.g. WindowGone")
    message: Optional[str] = None


class BatchResult(BaseModel):
    """Result of a stage/unstage over one or many windows."""

    target: str
    outcomes: List[WindowOutcome] = Field(default_factory=list)

    @property
    def affected(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.OK)

    def to_result(self) -> dict:
        data = self.model_dump(mode="json")
        data["affected"] = self.affected
        return data


class DaemonStatus(BaseModel):
    """Snapshot returned by the ``status`` method."""

    version: str
    connected: bool
    active_workspace: Optional[int] = None
    focused_window: Optional[int] = None
    sticky: List[int] = Field(default_factory=list)
    staged: List[int] = Field(default_factory=list)
    moving: List[int] = Field(default_factory=list)
    uptime_seconds: float = 0.0
    events_processed: int = 0
    commands_processed: int = 0
