"""
Unit tests for the niri wire codec.

Covers reply decoding and event-stream message translation, including
tolerance for event kinds nsticky does not know about.
"""

import pytest

from nsticky.connection import decode_event, decode_reply, encode_request
from nsticky.errors import NStickyError
from nsticky.models import WindowClosed, WindowFocused, WindowOpened, WorkspaceActivated


class TestRequestReply:
    """Test request encoding and reply decoding."""

    def test_encode_is_one_json_line(self):
        assert encode_request("Windows") == b'"Windows"\n'

    def test_ok_payload(self):
        assert decode_reply(b'{"Ok":{"FocusedWindow":null}}\n') == {"FocusedWindow": None}

    def test_ok_handled(self):
        assert decode_reply(b'{"Ok":"Handled"}') == "Handled"

    def test_err_reply_raises(self):
        with pytest.raises(NStickyError, match="no such window"):
            decode_reply(b'{"Err":"no such window"}')

    @pytest.mark.parametrize("line", [b"garbage", b"[1,2]", b'{"Maybe":1}'])
    def test_malformed_reply(self, line):
        with pytest.raises(NStickyError):
            decode_reply(line)


class TestDecodeEvent:
    """Test event-stream message translation."""

    def test_workspace_activated(self):
        events = decode_event({"WorkspaceActivated": {"id": 3, "focused": True}})

        assert events == [WorkspaceActivated(workspace_id=3, focused=True)]

    def test_workspace_activated_unfocused(self):
        events = decode_event({"WorkspaceActivated": {"id": 3, "focused": False}})

        assert events == [WorkspaceActivated(workspace_id=3, focused=False)]

    def test_window_opened_or_changed(self):
        message = {"WindowOpenedOrChanged": {"window": {"id": 7, "workspace_id": 2, "title": "x"}}}

        assert decode_event(message) == [WindowOpened(window_id=7, workspace_id=2)]

    def test_windows_changed_expands(self):
        """Test the initial window snapshot becomes one WindowOpened per window."""
        message = {"WindowsChanged": {"windows": [
            {"id": 1, "workspace_id": 1},
            {"id": 2, "workspace_id": None},
        ]}}

        assert decode_event(message) == [
            WindowOpened(window_id=1, workspace_id=1),
            WindowOpened(window_id=2, workspace_id=None),
        ]

    def test_window_closed(self):
        assert decode_event({"WindowClosed": {"id": 9}}) == [WindowClosed(window_id=9)]

    def test_focus_cleared(self):
        assert decode_event({"WindowFocusChanged": {"id": None}}) == [WindowFocused(window_id=None)]

    def test_unknown_event_ignored(self):
        """Test events nsticky does not use decode to nothing."""
        assert decode_event({"KeyboardLayoutsChanged": {"keyboard_layouts": {}}}) == []

    def test_malformed_event_ignored(self):
        assert decode_event({"WindowClosed": {}}) == []
