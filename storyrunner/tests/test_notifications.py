"""Tests for notifications module.

These tests verify macOS notification functionality.
"""

from unittest.mock import patch


class TestSendNotification:
    """Test the send_notification function."""

    def test_sends_notification_on_macos(self):
        """Should call osascript on macOS."""
        from storyrunner.notifications import send_notification

        with patch("storyrunner.notifications.platform") as mock_platform:
            mock_platform.system.return_value = "Darwin"

            with patch("storyrunner.notifications.subprocess") as mock_subprocess:
                send_notification("My Title", "My Message")

        mock_subprocess.run.assert_called_once()
        call_args = mock_subprocess.run.call_args[0][0]
        assert call_args[0] == "osascript"
        script = call_args[2]
        assert '"My Title"' in script
        assert '"My Message"' in script
        assert 'sound name "default"' in script

    def test_quotes_are_escaped(self):
        """Quotes in text must not break the AppleScript literal."""
        from storyrunner.notifications import send_notification

        with patch("storyrunner.notifications.platform") as mock_platform:
            mock_platform.system.return_value = "Darwin"

            with patch("storyrunner.notifications.subprocess") as mock_subprocess:
                send_notification('Say "hi"', "back\\slash")

        script = mock_subprocess.run.call_args[0][0][2]
        assert '"Say \\"hi\\""' in script
        assert '"back\\\\slash"' in script

    def test_silent_notification(self):
        from storyrunner.notifications import send_notification

        with patch("storyrunner.notifications.platform") as mock_platform:
            mock_platform.system.return_value = "Darwin"

            with patch("storyrunner.notifications.subprocess") as mock_subprocess:
                send_notification("Title", "Message", sound=False)

        assert "sound name" not in mock_subprocess.run.call_args[0][0][2]

    def test_noop_on_linux(self):
        """Should do nothing on non-macOS platforms."""
        from storyrunner.notifications import send_notification

        with patch("storyrunner.notifications.platform") as mock_platform:
            mock_platform.system.return_value = "Linux"

            with patch("storyrunner.notifications.subprocess") as mock_subprocess:
                send_notification("Title", "Message")

        mock_subprocess.run.assert_not_called()


class TestNotifyRunFinished:
    """Test notify_run_finished."""

    def test_blocked_run_plays_sound(self):
        from storyrunner.notifications import notify_run_finished

        with patch("storyrunner.notifications.send_notification") as mock_send:
            notify_run_finished("Task Manager", "blocked", "Stories: 1/3 complete\nIterations: 2")

        mock_send.assert_called_once_with(
            "Task Manager: run blocked",
            "Stories: 1/3 complete · Iterations: 2",
            sound=True,
        )

    def test_completed_run_is_quiet(self):
        from storyrunner.notifications import notify_run_finished

        with patch("storyrunner.notifications.send_notification") as mock_send:
            notify_run_finished("Task Manager", "completed", "Stories: 3/3 complete")

        assert mock_send.call_args.kwargs["sound"] is False
        assert "all stories complete" in mock_send.call_args.args[0]
