"""
Recovery sweep for stalled stream entries.

Entries read by a consumer that crashed or hung stay pending in the consumer
group. The sweep periodically reclaims entries idle longer than the
visibility timeout and runs them through the normal record processing,
which gives at-least-once delivery.
"""

import logging

from mailqueue.constants import SPAN_RECOVER_PENDING, STREAM_START_ID
from mailqueue.observability.metrics import MetricsCollector, get_metrics
from mailqueue.observability.tracing import get_tracer
from mailqueue.queue.keys import QueueKeys
from mailqueue.runtime import RunningFlag
from mailqueue.store.base import QueueStore
from mailqueue.worker.processor import RecordProcessor

logger = logging.getLogger(__name__)


class RecoverySweep:
    """
    Reclaims and reprocesses entries whose consumer went silent.

    Runs periodically to:
    1. Claim pending entries idle for at least the visibility timeout
    2. Process each one exactly like a freshly read entry
    3. Record metrics for monitoring
    """

    def __init__(
        self,
        store: QueueStore,
        keys: QueueKeys,
        processor: RecordProcessor,
        running: RunningFlag,
        *,
        consumer_name: str,
        visibility_timeout_ms: int = 180_000,
        batch_size: int = 10,
        interval_seconds: float = 30.0,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._keys = keys
        self._processor = processor
        self._running = running
        self.consumer_name = consumer_name
        self.visibility_timeout_ms = visibility_timeout_ms
        self.batch_size = batch_size
        self.interval = interval_seconds
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the recovery loop."""
        logger.info(f"Recovery sweep starting with interval {self.interval}s")

        while self._running.is_running:
            try:
                recovered = await self.recover_pending()

                if recovered > 0:
                    logger.info(f"Recovered {recovered} stalled entries")

            except Exception as e:
                logger.exception(f"Error in recovery loop: {e}")

            await self._running.sleep(self.interval)

        logger.info("Recovery sweep stopped")

    async def recover_pending(self) -> int:
        """
        Reclaim and process stalled entries.

        Returns:
            Number of entries reclaimed.
        """
        cursor = STREAM_START_ID
        recovered = 0

        with get_tracer().start_as_current_span(SPAN_RECOVER_PENDING) as span:
            while not self._running.is_stopped:
                cursor, entries = await self._store.stream_reclaim_stale(
                    self._keys.stream,
                    self._keys.group,
                    self.consumer_name,
                    min_idle_ms=self.visibility_timeout_ms,
                    start_id=cursor,
                    count=self.batch_size,
                )
                if not entries:
                    break

                recovered += len(entries)
                for entry in entries:
                    try:
                        await self._processor.process_record(entry)
                    except Exception as e:
                        logger.exception(
                            f"Failed to process reclaimed record: {e}",
                            extra={"entry_id": entry.entry_id},
                        )

                if cursor == STREAM_START_ID:
                    break

            span.set_attribute("recovered", recovered)

        if recovered > 0:
            self._metrics.record_jobs_recovered(recovered)
        return recovered

    async def run_once(self) -> int:
        """
        Run the sweep once (for testing or cron-style execution).

        Returns:
            Number of entries reclaimed.
        """
        return await self.recover_pending()
