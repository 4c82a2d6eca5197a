"""
Periodic model-server liveness check.

Runs as an asyncio task owned by a ConversationController. On the first
failed check it invokes the teardown callback and ends its own loop, so a
dead server produces one failure rather than a stream of them.
"""
from typing import Awaitable, Callable, Optional
import asyncio

from app.logging_config import get_logger

logger = get_logger(__name__)

MONITOR_INTERVAL_SECONDS = 5.0


class ConnectionMonitor:
    """
    Interval timer with an explicit start/stop lifecycle.

    Args:
        check: Async callable returning True while the connection is healthy
        on_failure: Synchronous teardown called once when a check fails
        interval: Seconds between checks
    """

    def __init__(
            self,
            check: Callable[[], Awaitable[bool]],
            on_failure: Callable[[], None],
            interval: float = MONITOR_INTERVAL_SECONDS
            ):
        self.check = check
        self.on_failure = on_failure
        self.interval = interval
        self._task: Optional[asyncio.Task] = None


    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


    def start(self) -> None:
        """Start (or restart) monitoring. Must be called from a running event loop."""
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug(f"Connection monitor started ({self.interval:.0f}s interval)")


    def stop(self) -> None:
        """Cancel the monitor task if it is running."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Stopping from inside the loop: _run returns on its own
            return
        task.cancel()
        logger.debug("Connection monitor stopped")


    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            healthy = await self.check()
            if not healthy:
                logger.warning("Connection check failed; stopping monitor")
                self._task = None
                self.on_failure()
                return
