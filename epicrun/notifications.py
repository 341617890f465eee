"""
Desktop notifications for epicrun.

Uses notify-send (freedesktop compliant) for notifications.
Works with mako, dunst, GNOME, KDE notification daemons.
"""

import subprocess
import shutil
import logging

logger = logging.getLogger(__name__)


VALID_URGENCIES = ("low", "normal", "critical")

MAX_NOTIFICATION_LENGTH = 200


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    try:
        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "epicrun",
            title,
            message
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def notify_blocked(story_id: str, reason: str):
    """Notify that a story is blocked."""
    # Truncate long reasons to keep notifications readable
    if len(reason) > MAX_NOTIFICATION_LENGTH:
        reason = reason[:MAX_NOTIFICATION_LENGTH] + "..."
    notify(
        f"epicrun: {story_id}",
        f"Blocked: {reason}",
        "critical"
    )


def notify_epic_complete(epic_id: str, completed: int, failed: int):
    notify(
        f"epicrun: Epic {epic_id}",
        f"Complete: {completed} stories done, {failed} failed",
        "low" if failed == 0 else "normal"
    )


def notify_chain_complete(epic_ids: list[str], exit_code: int):
    """Notify that a chain finished."""
    status = "complete" if exit_code == 0 else f"finished with exit code {exit_code}"
    notify(
        f"epicrun: Chain {' '.join(epic_ids)}",
        f"Chain {status}",
        "low" if exit_code == 0 else "critical"
    )
