"""
Periodic retention sweep for the sync queue.

Runs SyncQueue.cleanup() on a fixed interval so completed items do not
accumulate. A failed sweep is logged and retried on the next tick.

Invariants:
    - Only completed items older than the retention horizon are removed
    - A sweep failure never stops the loop
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .queue import SyncQueue

logger = logging.getLogger(__name__)


class CleanupLoop:
    """Background loop calling SyncQueue.cleanup().

    Example:
        >>> loop = CleanupLoop(queue, interval_seconds=3600)
        >>> task = asyncio.create_task(loop.start())  # Runs until stopped
    """

    def __init__(
        self,
        queue: SyncQueue,
        interval_seconds: int = 3600,
        retention_days: int | None = None,
    ) -> None:
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.retention_days = retention_days

        self._running = False
        self._sweep_count = 0
        self._deleted_total = 0

    async def start(self) -> None:
        """Start the cleanup loop."""
        if self._running:
            logger.warning("Cleanup loop already running")
            return

        self._running = True
        logger.info(
            "Starting sync queue cleanup loop",
            extra={
                "interval_seconds": self.interval_seconds,
                "retention_days": self.retention_days or self.queue.retention_days,
            },
        )

        try:
            while self._running:
                await self.sweep()
                await asyncio.sleep(self.interval_seconds)

        except asyncio.CancelledError:
            logger.info("Cleanup loop cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the cleanup loop."""
        self._running = False
        logger.info("Stopping cleanup loop")

    async def sweep(self) -> int:
        """Run one sweep, returning the number of deleted items (0 on failure)."""
        try:
            deleted = await self.queue.cleanup(self.retention_days)
        except Exception as e:
            logger.error(f"Sync queue cleanup failed: {e}", exc_info=True)
            return 0

        self._sweep_count += 1
        self._deleted_total += deleted
        return deleted

    @property
    def stats(self) -> dict[str, Any]:
        """Get cleanup loop statistics."""
        return {
            "running": self._running,
            "sweep_count": self._sweep_count,
            "deleted_total": self._deleted_total,
        }
