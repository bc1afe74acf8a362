"""
Queue depth monitor.
"""

import asyncio
import logging

from mailqueue.observability.metrics import MetricsCollector, get_metrics
from mailqueue.queue.keys import QueueKeys
from mailqueue.runtime import RunningFlag
from mailqueue.store.base import QueueStore
from mailqueue.types.job import QueueDepth

logger = logging.getLogger(__name__)


class QueueMonitor:
    """Periodically publishes backlog sizes as gauges."""

    def __init__(
        self,
        store: QueueStore,
        keys: QueueKeys,
        running: RunningFlag,
        *,
        interval_seconds: float = 15.0,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._keys = keys
        self._running = running
        self.interval = interval_seconds
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Emit queue metrics until the running flag is cleared."""
        logger.info(f"Queue monitor starting with interval {self.interval}s")

        while self._running.is_running:
            await self.emit_queue_metrics()
            await self._running.sleep(self.interval)

        logger.info("Queue monitor stopped")

    async def emit_queue_metrics(self) -> QueueDepth | None:
        """
        Sample ready, scheduled and dead-letter sizes and publish them.

        Returns:
            The sampled depth, or None if the store could not be read.
        """
        try:
            ready, scheduled, dead_letter = await asyncio.gather(
                self._store.stream_length(self._keys.stream),
                self._store.sorted_set_cardinality(self._keys.schedule),
                self._store.stream_length(self._keys.dead_letter),
            )
        except Exception as e:
            logger.debug("Queue metrics collection failed", extra={"error": str(e)})
            return None

        depth = QueueDepth(ready=ready, scheduled=scheduled, dead_letter=dead_letter)
        self._metrics.update_queue_depth(depth)
        return depth
