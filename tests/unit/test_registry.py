"""
Unit tests for the sticky/staged Registry.

Tests cover idempotence, staging rules, close handling and snapshot views.
"""

import pytest

from nsticky.errors import NotSticky
from nsticky.models import ToggleResult
from nsticky.registry import Registry


class TestAddRemove:
    """Test add/remove idempotence."""

    def test_add_twice_keeps_single_entry(self, registry):
        """Test add(X); add(X) leaves X once."""
        assert registry.add(7) is True
        assert registry.add(7) is False

        assert list(registry.list_sticky()) == [7]

    def test_remove_absent_is_noop(self, registry):
        """Test removing an unknown id reports False and changes nothing."""
        registry.add(1)

        assert registry.remove(2) is False
        assert list(registry.list_sticky()) == [1]

    def test_remove_clears_staged(self, registry):
        """Test remove drops the window from both sets."""
        registry.add(3)
        registry.stage(3)

        assert registry.remove(3) is True
        assert not registry.is_sticky(3)
        assert not registry.is_staged(3)


class TestToggle:
    """Test toggle semantics."""

    def test_toggle_adds_then_removes(self, registry):
        """Test toggle twice restores original membership."""
        assert registry.toggle(5) == ToggleResult.ADDED
        assert registry.is_sticky(5)

        assert registry.toggle(5) == ToggleResult.REMOVED
        assert not registry.is_sticky(5)

    def test_toggle_removal_clears_staged(self, registry):
        """Test removing via toggle also unstages."""
        registry.add(5)
        registry.stage(5)

        registry.toggle(5)

        assert registry.snapshot() == {"sticky": [], "staged": []}


class TestStaging:
    """Test stage/unstage rules."""

    def test_stage_requires_sticky(self, registry):
        """Test staging an untracked window raises NotSticky with registry unchanged."""
        registry.add(1)

        with pytest.raises(NotSticky) as exc_info:
            registry.stage(2)

        assert exc_info.value.window_id == 2
        assert registry.snapshot() == {"sticky": [1], "staged": []}

    def test_stage_is_idempotent(self, registry):
        """Test staging twice reports newly staged only once."""
        registry.add(1)

        assert registry.stage(1) is True
        assert registry.stage(1) is False
        assert list(registry.list_staged()) == [1]

    def test_staged_window_stays_sticky(self, registry):
        """Test staged windows remain sticky but leave the active set."""
        registry.add(1)
        registry.add(2)
        registry.stage(1)

        assert registry.is_sticky(1)
        assert list(registry.active_ids()) == [2]

    def test_unstage_absent_is_noop(self, registry):
        """Test unstage of a non-staged window returns False."""
        registry.add(1)

        assert registry.unstage(1) is False
        assert registry.is_sticky(1)


class TestWindowClosed:
    """Test close-event handling."""

    def test_close_clears_both_sets(self, registry):
        """Test on_window_closed removes X from sticky and staged."""
        registry.add(4)
        registry.stage(4)

        registry.on_window_closed(4)

        assert not registry.is_sticky(4)
        assert not registry.is_staged(4)

    def test_close_unknown_window(self, registry):
        """Test closing an untracked window is harmless."""
        registry.on_window_closed(99)

        assert len(registry.list_sticky()) == 0

    def test_prune_drops_dead_windows(self, registry):
        """Test prune removes ids niri no longer reports."""
        for window_id in (1, 2, 3):
            registry.add(window_id)
        registry.stage(3)

        dropped = registry.prune({2: 10})

        assert dropped == [1, 3]
        assert registry.snapshot() == {"sticky": [2], "staged": []}


class TestSnapshot:
    """Test list_sticky snapshot views."""

    def test_snapshot_is_restartable(self, registry):
        """Test iterating a snapshot twice yields the same ids."""
        registry.add(3)
        registry.add(1)

        snapshot = registry.list_sticky()

        assert list(snapshot) == [1, 3]
        assert list(snapshot) == [1, 3]

    def test_snapshot_is_frozen(self, registry):
        """Test later mutations are not visible through an existing snapshot."""
        registry.add(1)
        snapshot = registry.list_sticky()

        registry.add(2)
        registry.remove(1)

        assert list(snapshot) == [1]
        assert 2 not in snapshot
        assert len(snapshot) == 1

    def test_fresh_registry_is_empty(self):
        """Test a new registry has no windows."""
        assert Registry().snapshot() == {"sticky": [], "staged": []}
