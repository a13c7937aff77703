"""Periodic queue/cache statistics."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class StatsReporter:
    """Emits {queueLength, cacheSize} every interval when either is nonzero.

    Only reads the stats source; never touches the cache or the queue.
    """

    def __init__(
        self,
        stats_source: Callable[[], dict[str, Any]],
        interval: float = 30.0,
        log_callback: Callable[[str, str], None] | None = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.stats_source = stats_source
        self.interval = interval
        self.log_callback = log_callback
        self._sleep = sleep or asyncio.sleep
        self._task: asyncio.Task | None = None

    def snapshot(self) -> dict[str, int]:
        stats = self.stats_source()
        return {
            "queueLength": stats.get("queueLength", 0),
            "cacheSize": stats.get("cacheSize", 0),
        }

    def report_once(self) -> Optional[dict[str, int]]:
        """Emit one report. Returns what was emitted, or None when idle."""
        snapshot = self.snapshot()
        if not (snapshot["queueLength"] or snapshot["cacheSize"]):
            return None

        message = f"Queue: {snapshot['queueLength']}, Cache: {snapshot['cacheSize']}"
        if self.log_callback:
            self.log_callback(message, "info")
        else:
            logger.info(message)
        return snapshot

    async def run(self):
        while True:
            await self._sleep(self.interval)
            try:
                self.report_once()
            except Exception as e:
                logger.warning(f"Stats report failed: {e}")

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
