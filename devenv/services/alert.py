"""
Best-effort desktop alerts.

Alerts run on a background task so a slow or missing notification daemon never
delays provisioning. The task handle is kept and joined by aclose(), so
callers (and tests) can wait for delivery deterministically.
"""

import asyncio
import logging
import shutil
import sys
from typing import List, Optional

from ..errors import CommandError
from ..utils.async_subprocess import run_async

logger = logging.getLogger(__name__)

ALERT_TITLE = "Kubernetes Developer Environment"
ALERT_TIMEOUT_SECONDS = 10


def _applescript_string(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _notification_command(message: str) -> Optional[List[str]]:
    if sys.platform == "darwin" and shutil.which("osascript"):
        script = (
            f"display notification {_applescript_string(message)} "
            f"with title {_applescript_string(ALERT_TITLE)} sound name \"default\""
        )
        return ["osascript", "-e", script]
    if shutil.which("notify-send"):
        return ["notify-send", "--urgency=critical", ALERT_TITLE, message]
    return None


class AlertNotifier:
    """Fire-and-forget notifications with an explicit join."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._tasks: List[asyncio.Task] = []

    def alert(self, message: str) -> Optional[asyncio.Task]:
        """Schedule a notification. Returns the task, or None when alerts are off."""
        if not self.enabled:
            return None
        task = asyncio.create_task(self._send(message))
        self._tasks.append(task)
        return task

    async def _send(self, message: str) -> None:
        cmd = _notification_command(message)
        if cmd is None:
            logger.debug("[ALERT] No notification command available")
            return

        try:
            result = await run_async(cmd, timeout=ALERT_TIMEOUT_SECONDS)
            if not result.success:
                logger.debug(f"[ALERT] Notification failed: {result.stderr.strip()}")
        except (CommandError, asyncio.TimeoutError) as e:
            logger.debug(f"[ALERT] Notification failed: {e}")

    async def aclose(self) -> None:
        """Wait for every scheduled notification to finish."""
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
