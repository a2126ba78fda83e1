"""Reconciliation actor.

One asyncio task owns the Registry and processes work items strictly one
at a time: niri events from the event pump and control commands from the
IPC server share a single queue and interleave in arrival order. Each
item runs to completion, including its niri round-trips, before the next
one starts, so no window ever has two relocations in flight.

niri has no way to cancel a move. A move whose target went stale while it
was in flight (a newer workspace was focused meanwhile) is followed by
one corrective move to the latest focused workspace.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from . import __version__
from .constants import STAGE_WORKSPACE, WORK_QUEUE_SIZE
from .errors import NoFocusedWindow, NStickyError, WindowGone
from .models import (
    BatchResult,
    DaemonStatus,
    ManagerConnected,
    ManagerDisconnected,
    ManagerEvent,
    OutcomeStatus,
    PlacementState,
    TargetKind,
    TargetParams,
    ToggleResult,
    WindowClosed,
    WindowFocused,
    WindowOpened,
    WindowOutcome,
    WindowParams,
    WindowPlacement,
    WorkspaceActivated,
)
from .registry import Registry

logger = logging.getLogger(__name__)


@dataclass
class EventItem:
    """A niri event waiting for the actor."""

    event: ManagerEvent


@dataclass
class CommandItem:
    """A control command waiting for the actor; the result goes to ``future``."""

    method: str
    params: Optional[BaseModel]
    future: asyncio.Future


class Reconciler:
    """Single-writer coordinator between niri, the registry and the CLI."""

    def __init__(
        self,
        connection,
        registry: Optional[Registry] = None,
        stage_workspace: str = STAGE_WORKSPACE,
        queue_size: int = WORK_QUEUE_SIZE,
    ) -> None:
        """Initialize reconciler.

        Args:
            connection: ResilientNiriConnection (or a compatible fake)
            registry: Registry to own; a fresh one is created when omitted
            stage_workspace: Name of the workspace staged windows are parked on
            queue_size: Maximum number of pending work items
        """
        self.connection = connection
        self.registry = registry or Registry()
        self.stage_workspace = stage_workspace
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

        self.placements: Dict[int, WindowPlacement] = {}
        self.active_workspace: Optional[int] = None
        self.focused_window: Optional[int] = None

        self.events_processed = 0
        self.commands_processed = 0
        self.started_at = time.monotonic()

        self._commands: Dict[str, Callable[[Optional[BaseModel]], Awaitable[Any]]] = {
            "add": self._cmd_add,
            "remove": self._cmd_remove,
            "toggle_active": self._cmd_toggle_active,
            "list": self._cmd_list,
            "stage": self._cmd_stage,
            "unstage": self._cmd_unstage,
            "stage_list": self._cmd_stage_list,
            "status": self._cmd_status,
        }

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def submit_event(self, event: ManagerEvent) -> None:
        await self.queue.put(EventItem(event))

    async def submit_command(self, method: str, params: Optional[BaseModel] = None) -> Any:
        """Queue a control command and wait for the actor to finish it.

        Raises:
            NStickyError: The typed failure of the command
        """
        future = asyncio.get_running_loop().create_future()
        await self.queue.put(CommandItem(method, params, future))
        return await future

    async def pump_events(self) -> None:
        """Forward niri events into the work queue until the stream ends."""
        async for event in self.connection.subscribe_events():
            await self.submit_event(event)

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Process work items one at a time, forever."""
        logger.info("Reconciler started")
        while True:
            item = await self.queue.get()
            try:
                if isinstance(item, EventItem):
                    await self.handle_event(item.event)
                else:
                    await self._execute(item)
            except Exception as e:
                logger.error(f"Error processing {item!r}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    async def _execute(self, item: CommandItem) -> None:
        self.commands_processed += 1
        try:
            result = await self.dispatch(item.method, item.params)
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)

    async def dispatch(self, method: str, params: Optional[BaseModel] = None) -> Any:
        """Run one control command. Only call from the actor task."""
        handler = self._commands.get(method)
        if handler is None:
            raise ValueError(f"Unknown command: {method}")
        logger.debug(f"Executing command {method} {params!r}")
        return await handler(params)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: ManagerEvent) -> None:
        """Apply one niri event. Only call from the actor task."""
        self.events_processed += 1

        if isinstance(event, WorkspaceActivated):
            if not event.focused:
                logger.debug(f"Ignoring activation of unfocused workspace {event.workspace_id}")
                return
            logger.info(f"Workspace switched to: {event.workspace_id}")
            self.active_workspace = event.workspace_id
            await self.reconcile(event.workspace_id)

        elif isinstance(event, WindowClosed):
            self.registry.on_window_closed(event.window_id)
            self.placements.pop(event.window_id, None)

        elif isinstance(event, WindowOpened):
            placement = self.placements.get(event.window_id)
            if placement is not None and placement.state != PlacementState.MOVING:
                placement.workspace_id = event.workspace_id

        elif isinstance(event, WindowFocused):
            self.focused_window = event.window_id

        elif isinstance(event, ManagerConnected):
            await self.resync()

        elif isinstance(event, ManagerDisconnected):
            logger.warning(f"niri connection lost ({event.reason}); commands fail until reconnected")

    async def reconcile(self, workspace_id: int) -> List[int]:
        """Move every sticky, non-staged window onto ``workspace_id``.

        Failures are logged and retried on the next trigger. Once a move of
        this pass has been issued, a newer focused workspace reported by
        niri replaces ``workspace_id`` for the remaining windows.

        Returns:
            Ids of windows that were moved
        """
        target = workspace_id
        attempted = False
        moved: List[int] = []
        for window_id in self.registry.active_ids():
            latest = self.connection.latest_active_workspace
            if attempted and latest is not None and latest != target:
                logger.info(f"Workspace {target} went stale mid-pass, continuing with {latest}")
                target = latest
                self.active_workspace = latest

            placement = self._placement(window_id)
            if placement.workspace_id == target:
                continue
            attempted = True
            try:
                await self._move(window_id, target)
                moved.append(window_id)
            except NStickyError as e:
                logger.warning(f"Failed to move window {window_id}: {e.kind}: {e.message}")
        if moved:
            logger.info(f"Moved {len(moved)} sticky window(s) to workspace {target}")
        return moved

    async def resync(self) -> None:
        """Re-read niri state after (re)connecting and reconcile against it."""
        try:
            live = await self.connection.windows()
            for window_id in self.registry.prune(live):
                self.placements.pop(window_id, None)
            for window_id, placement in self.placements.items():
                placement.workspace_id = live.get(window_id)
            workspace_id = await self.connection.active_workspace()
        except NStickyError as e:
            logger.warning(f"Resync with niri failed ({e.kind}: {e.message}); waiting for next event")
            return

        self.active_workspace = workspace_id
        logger.info(f"Resynchronized with niri: active workspace {workspace_id}")
        await self.reconcile(workspace_id)

    # ------------------------------------------------------------------
    # Placement state machine
    # ------------------------------------------------------------------

    def _placement(self, window_id: int) -> WindowPlacement:
        placement = self.placements.get(window_id)
        if placement is None:
            placement = WindowPlacement(
                window_id=window_id,
                workspace_id=self.connection.window_workspace(window_id),
            )
            self.placements[window_id] = placement
        return placement

    def _follows_active(self, window_id: int) -> bool:
        return self.registry.is_sticky(window_id) and not self.registry.is_staged(window_id)

    async def _move(self, window_id: int, workspace_id: int, corrective: bool = True) -> None:
        """Relocate one window: SETTLED -> MOVING -> SETTLED | FAILED.

        Raises:
            WindowGone: After dropping the window from the registry
            NStickyError: Other failures, with the placement left FAILED
        """
        placement = self._placement(window_id)
        placement.state = PlacementState.MOVING
        placement.updated = datetime.now()
        placement.target_workspace = workspace_id

        try:
            await self.connection.move_window(window_id, workspace_id)
        except WindowGone:
            logger.info(f"Window {window_id} is gone, dropping it")
            self.registry.on_window_closed(window_id)
            self.placements.pop(window_id, None)
            raise
        except NStickyError as e:
            placement.state = PlacementState.FAILED
            placement.updated = datetime.now()
            placement.last_error = e.kind
            logger.warning(f"Move of window {window_id} to workspace {workspace_id} failed: {e.kind}")
            raise

        placement.state = PlacementState.SETTLED
        placement.updated = datetime.now()
        placement.workspace_id = workspace_id
        placement.target_workspace = None
        placement.last_error = None

        latest = self.connection.latest_active_workspace
        if corrective and latest is not None and latest != workspace_id and self._follows_active(window_id):
            logger.info(
                f"Window {window_id} landed on stale workspace {workspace_id}, "
                f"correcting to {latest}"
            )
            self.active_workspace = latest
            await self._move(window_id, latest, corrective=False)

    async def _current_workspace(self) -> int:
        workspace_id = await self.connection.active_workspace()
        self.active_workspace = workspace_id
        return workspace_id

    async def _snap(self, window_id: int) -> bool:
        """Bring a newly sticky window onto the active workspace right away."""
        if self.registry.is_staged(window_id):
            return False
        workspace_id = await self._current_workspace()
        if self._placement(window_id).workspace_id == workspace_id:
            return False
        await self._move(window_id, workspace_id)
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _cmd_add(self, params: WindowParams) -> Dict[str, Any]:
        added = self.registry.add(params.window_id)
        moved = await self._snap(params.window_id)
        return {"window_id": params.window_id, "added": added, "moved": moved}

    async def _cmd_remove(self, params: WindowParams) -> Dict[str, Any]:
        removed = self.registry.remove(params.window_id)
        self.placements.pop(params.window_id, None)
        return {"window_id": params.window_id, "removed": removed}

    async def _cmd_toggle_active(self, params: None = None) -> Dict[str, Any]:
        window_id = await self.connection.focused_window()
        if window_id is None:
            raise NoFocusedWindow("No focused window")

        result = self.registry.toggle(window_id)
        moved = False
        if result == ToggleResult.ADDED:
            moved = await self._snap(window_id)
        else:
            self.placements.pop(window_id, None)
        return {"window_id": window_id, "result": result.value, "moved": moved}

    async def _cmd_list(self, params: None = None) -> Dict[str, Any]:
        return {"windows": list(self.registry.list_sticky())}

    async def _cmd_stage_list(self, params: None = None) -> Dict[str, Any]:
        return {"windows": list(self.registry.list_staged())}

    async def _cmd_stage(self, params: TargetParams) -> Dict[str, Any]:
        ids = await self._resolve_targets(params, self.registry.list_sticky())
        return await self._apply(params, ids, self._stage_one)

    async def _cmd_unstage(self, params: TargetParams) -> Dict[str, Any]:
        ids = await self._resolve_targets(params, self.registry.list_staged())
        return await self._apply(params, ids, self._unstage_one)

    async def _cmd_status(self, params: None = None) -> Dict[str, Any]:
        snapshot = self.registry.snapshot()
        status = DaemonStatus(
            version=__version__,
            connected=self.connection.is_connected,
            active_workspace=self.active_workspace,
            focused_window=self.focused_window,
            sticky=snapshot["sticky"],
            staged=snapshot["staged"],
            moving=sorted(
                window_id for window_id, p in self.placements.items()
                if p.state == PlacementState.MOVING
            ),
            uptime_seconds=round(time.monotonic() - self.started_at, 1),
            events_processed=self.events_processed,
            commands_processed=self.commands_processed,
        )
        return status.model_dump(mode="json")

    async def _resolve_targets(self, params: TargetParams, pool: Iterable[int]) -> List[int]:
        if params.kind == TargetKind.WINDOW:
            return [params.window_id]
        if params.kind == TargetKind.ACTIVE:
            window_id = await self.connection.focused_window()
            if window_id is None:
                raise NoFocusedWindow("No focused window")
            return [window_id]
        return list(pool)

    async def _apply(
        self,
        params: TargetParams,
        ids: List[int],
        apply_one: Callable[[int], Awaitable[WindowOutcome]],
    ) -> Dict[str, Any]:
        """Apply a per-window operation.

        A single target propagates its failure as the command's error; ``all``
        records each failure in the outcome list and keeps going.
        """
        batch = BatchResult(target=str(params.target))

        if params.kind != TargetKind.ALL:
            batch.outcomes.append(await apply_one(ids[0]))
            return batch.to_result()

        for window_id in ids:
            try:
                outcome = await apply_one(window_id)
            except NStickyError as e:
                outcome = WindowOutcome(
                    window_id=window_id,
                    status=OutcomeStatus.FAILED,
                    error=e.kind,
                    message=e.message,
                )
            batch.outcomes.append(outcome)

        logger.info(f"{params.target}: {batch.affected}/{len(ids)} window(s) affected")
        return batch.to_result()

    async def _stage_one(self, window_id: int) -> WindowOutcome:
        newly_staged = self.registry.stage(window_id)
        try:
            stage_id = await self.connection.ensure_workspace(self.stage_workspace)
            await self._move(window_id, stage_id, corrective=False)
        except NStickyError as e:
            if newly_staged:
                self.registry.unstage(window_id)
            if e.window_id is None:
                e.window_id = window_id
            raise
        return WindowOutcome(window_id=window_id, status=OutcomeStatus.OK)

    async def _unstage_one(self, window_id: int) -> WindowOutcome:
        if not self.registry.is_staged(window_id):
            return WindowOutcome(
                window_id=window_id,
                status=OutcomeStatus.SKIPPED,
                message="Window is not staged",
            )

        try:
            workspace_id = await self._current_workspace()
        except NStickyError as e:
            e.window_id = window_id
            raise

        self.registry.unstage(window_id)
        try:
            await self._move(window_id, workspace_id)
        except WindowGone:
            raise
        except NStickyError as e:
            self.registry.stage(window_id)
            if e.window_id is None:
                e.window_id = window_id
            raise
        return WindowOutcome(window_id=window_id, status=OutcomeStatus.OK)
