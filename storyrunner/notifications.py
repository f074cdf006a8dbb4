"""Desktop notifications for run events.

Alerts the user when a run finishes, gets blocked, or waits on a
rate limit. Only macOS is supported; elsewhere this is a no-op.
"""

import platform
import subprocess


def _quote(text: str) -> str:
    """Quote text as an AppleScript string literal."""
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def send_notification(title: str, message: str, sound: bool = True) -> None:
    """Send a macOS notification.

    Uses osascript to display a notification via macOS notification center.
    Silently does nothing on non-macOS platforms.

    Args:
        title: Notification title (bold text)
        message: Notification body text
        sound: Whether to play the default notification sound (default True)
    """
    if platform.system() != "Darwin":
        return

    script = f"display notification {_quote(message)} with title {_quote(title)}"
    if sound:
        script += ' sound name "default"'

    subprocess.run(["osascript", "-e", script], check=False)


def notify_run_finished(project: str, status: str, summary: str) -> None:
    """Notify about the end of a run, quietly for successful completion."""
    titles = {
        "completed": f"{project}: all stories complete",
        "blocked": f"{project}: run blocked",
        "rate_limited": f"{project}: all agents rate-limited",
        "aborted": f"{project}: run aborted",
        "no_eligible": f"{project}: no eligible stories",
        "max_iterations": f"{project}: iteration limit reached",
    }
    title = titles.get(status, f"{project}: run stopped ({status})")
    send_notification(title, summary.replace("\n", " · "), sound=status != "completed")
