"""Sticky/staged window registry.

Pure in-memory state with no I/O. The registry is owned by the reconciler
actor and is never touched from any other task, so it needs no locking.
"""

import logging
from typing import Dict, FrozenSet, Iterable, Iterator, List, Set

from .errors import NotSticky
from .models import ToggleResult

logger = logging.getLogger(__name__)


class WindowIdSnapshot:
    """Restartable, finite view over the ids present at snapshot time.

    Iterating yields ids in ascending order; each new iteration starts over.
    Later registry mutations are not visible through an existing snapshot.
    """

    __slots__ = ("_ids",)

    def __init__(self, ids: Iterable[int]) -> None:
        self._ids: FrozenSet[int] = frozenset(ids)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._ids))

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, window_id: object) -> bool:
        return window_id in self._ids

    def __repr__(self) -> str:
        return f"WindowIdSnapshot({sorted(self._ids)})"


class Registry:
    """In-memory store of sticky and staged window ids."""

    def __init__(self) -> None:
        self._sticky: Set[int] = set()
        self._staged: Set[int] = set()

    def add(self, window_id: int) -> bool:
        """Mark a window sticky.

        Returns:
            True if the window was newly added, False if already sticky
        """
        if window_id in self._sticky:
            return False
        self._sticky.add(window_id)
        logger.debug(f"Registry: added sticky window {window_id}")
        return True

    def remove(self, window_id: int) -> bool:
        """Forget a window entirely (sticky and staged).

        Returns:
            True if the window was sticky before the call
        """
        was_sticky = window_id in self._sticky
        self._sticky.discard(window_id)
        self._staged.discard(window_id)
        if was_sticky:
            logger.debug(f"Registry: removed sticky window {window_id}")
        return was_sticky

    def toggle(self, window_id: int) -> ToggleResult:
        """Remove a sticky window, or add a non-sticky one."""
        if window_id in self._sticky:
            self.remove(window_id)
            return ToggleResult.REMOVED
        self.add(window_id)
        return ToggleResult.ADDED

    def list_sticky(self) -> WindowIdSnapshot:
        return WindowIdSnapshot(self._sticky)

    def list_staged(self) -> WindowIdSnapshot:
        return WindowIdSnapshot(self._staged)

    def stage(self, window_id: int) -> bool:
        """Exempt a sticky window from relocation.

        Returns:
            True if the window was newly staged

        Raises:
            NotSticky: If the window is not tracked as sticky
        """
        if window_id not in self._sticky:
            raise NotSticky(f"Window {window_id} is not sticky, cannot stage", window_id=window_id)
        if window_id in self._staged:
            return False
        self._staged.add(window_id)
        logger.debug(f"Registry: staged window {window_id}")
        return True

    def unstage(self, window_id: int) -> bool:
        """Return a staged window to sticky behaviour; no-op if not staged."""
        if window_id not in self._staged:
            return False
        self._staged.discard(window_id)
        logger.debug(f"Registry: unstaged window {window_id}")
        return True

    def on_window_closed(self, window_id: int) -> None:
        """Drop a destroyed window from both sets."""
        if window_id in self._sticky or window_id in self._staged:
            logger.info(f"Window {window_id} closed, dropping from registry")
        self._sticky.discard(window_id)
        self._staged.discard(window_id)

    def is_sticky(self, window_id: int) -> bool:
        return window_id in self._sticky

    def is_staged(self, window_id: int) -> bool:
        return window_id in self._staged

    def active_ids(self) -> WindowIdSnapshot:
        """Sticky windows subject to relocation (staged ones are exempt)."""
        return WindowIdSnapshot(self._sticky - self._staged)

    def prune(self, live_ids: Iterable[int]) -> List[int]:
        """Drop ids niri no longer knows about.

        Args:
            live_ids: Ids of all windows currently open in niri

        Returns:
            Sorted list of ids that were dropped
        """
        live = set(live_ids)
        stale = sorted((self._sticky | self._staged) - live)
        for window_id in stale:
            self.on_window_closed(window_id)
        return stale

    def snapshot(self) -> Dict[str, List[int]]:
        return {"sticky": sorted(self._sticky), "staged": sorted(self._staged)}
