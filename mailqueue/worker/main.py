"""
Worker process for delivering email jobs.

The worker reads jobs from the ready stream through a shared consumer group,
delivers them, and handles retries and dead-lettering according to the job
lifecycle. The scheduler, recovery sweep and metrics monitor run alongside it
in the same process.
"""

import asyncio
import logging
import signal

from mailqueue.config import Settings, get_settings
from mailqueue.exceptions import ConsumerGroupMissingError
from mailqueue.monitor.main import QueueMonitor
from mailqueue.observability.logging import bind_context, setup_logging
from mailqueue.observability.metrics import MetricsCollector, start_metrics_server
from mailqueue.observability.tracing import setup_tracing
from mailqueue.queue.keys import QueueKeys
from mailqueue.queue.scheduler import Scheduler
from mailqueue.reaper.main import RecoverySweep
from mailqueue.runtime import Clock, RunningFlag, now_ms
from mailqueue.store.base import QueueStore
from mailqueue.store.redis_store import RedisQueueStore
from mailqueue.transport.base import EmailTransport
from mailqueue.transport.relay import build_transport
from mailqueue.worker.processor import RecordProcessor

logger = logging.getLogger(__name__)


class Worker:
    """
    Stream consumer running `concurrency` independent read loops.

    Features:
    - Consumer-group reads, so each entry goes to one consumer at a time
    - Consumer group recreated if it disappears
    - Graceful shutdown: a batch already read is always finished
    """

    def __init__(
        self,
        store: QueueStore,
        processor: RecordProcessor,
        keys: QueueKeys,
        running: RunningFlag,
        *,
        consumer_name: str,
        concurrency: int = 3,
        batch_size: int = 10,
        block_ms: int = 5000,
        error_backoff_seconds: float = 1.0,
    ):
        """
        Initialize the worker.

        Args:
            store: Durable queue store.
            processor: Applies the job lifecycle to each record.
            keys: Store key names.
            running: Shared running flag.
            consumer_name: Consumer name within the group.
            concurrency: Number of read loops.
            batch_size: Maximum entries per read.
            block_ms: How long a read waits for new entries.
            error_backoff_seconds: Pause after an unexpected loop error.
        """
        self._store = store
        self._processor = processor
        self._keys = keys
        self._running = running
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.error_backoff_seconds = error_backoff_seconds

    async def start(self) -> None:
        """Run all read loops until the running flag is cleared."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.consumer_name,
                "concurrency": self.concurrency,
                "batch_size": self.batch_size,
            },
        )

        await asyncio.gather(*(self.worker_loop(slot) for slot in range(self.concurrency)))

        logger.info("Worker stopped", extra={"worker_id": self.consumer_name})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.consumer_name})
        self._running.stop()

    async def worker_loop(self, slot: int) -> int:
        """
        Read and process entries until stopped.

        Returns:
            Number of records processed by this slot.
        """
        bind_context(worker_id=self.consumer_name, slot=slot)
        processed = 0
        group_ready = False

        while self._running.is_running:
            if not group_ready:
                try:
                    await self._store.ensure_group(self._keys.stream, self._keys.group)
                except Exception as e:
                    logger.exception(f"Failed to create consumer group: {e}", extra={"slot": slot})
                    await self._running.sleep(self.error_backoff_seconds)
                    continue
                group_ready = True

            try:
                entries = await self._store.stream_read_group(
                    self._keys.stream,
                    self._keys.group,
                    self.consumer_name,
                    count=self.batch_size,
                    block_ms=self.block_ms,
                )
            except ConsumerGroupMissingError:
                logger.warning("Consumer group missing, recreating", extra={"slot": slot})
                group_ready = False
                continue
            except Exception as e:
                logger.exception(f"Error in worker loop: {e}", extra={"slot": slot})
                await self._running.sleep(self.error_backoff_seconds)
                continue

            for entry in entries:
                try:
                    await self._processor.process_record(entry)
                except Exception as e:
                    # Left pending; the recovery sweep reclaims it
                    logger.exception(
                        f"Failed to process record: {e}",
                        extra={"entry_id": entry.entry_id, "slot": slot},
                    )
                processed += 1

        return processed


class QueueRunner:
    """Runs the worker, scheduler, recovery sweep and metrics monitor together."""

    def __init__(
        self,
        store: QueueStore,
        transport: EmailTransport,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock = now_ms,
    ):
        settings = settings or get_settings()
        keys = QueueKeys.from_settings(settings)

        self.running = RunningFlag()
        self.processor = RecordProcessor.from_settings(
            store, transport, settings, metrics=metrics, clock=clock
        )
        self.worker = Worker(
            store,
            self.processor,
            keys,
            self.running,
            consumer_name=settings.consumer_name,
            concurrency=settings.worker_concurrency,
            batch_size=settings.worker_batch_size,
            block_ms=settings.worker_block_ms,
            error_backoff_seconds=settings.worker_error_backoff_seconds,
        )
        self.scheduler = Scheduler.from_settings(store, self.running, settings, clock=clock)
        self.recovery = RecoverySweep(
            store,
            keys,
            self.processor,
            self.running,
            consumer_name=settings.consumer_name,
            visibility_timeout_ms=settings.visibility_timeout_ms,
            batch_size=settings.worker_batch_size,
            interval_seconds=settings.recovery_interval_seconds,
            metrics=metrics,
        )
        self.monitor = QueueMonitor(
            store,
            keys,
            self.running,
            interval_seconds=settings.metrics_interval_seconds,
            metrics=metrics,
        )
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start all loops and wait until they finish."""
        self.running.start()
        self._tasks = [
            asyncio.create_task(self.worker.start(), name="worker"),
            asyncio.create_task(self.scheduler.start(), name="scheduler"),
            asyncio.create_task(self.recovery.start(), name="recovery"),
            asyncio.create_task(self.monitor.start(), name="monitor"),
        ]
        try:
            await asyncio.gather(*self._tasks)
        finally:
            self.running.stop()
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Clear the running flag; loops exit after their current unit of work."""
        logger.info("Queue runner stopping")
        self.running.stop()


async def run_async() -> None:
    """Run the queue process asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    start_metrics_server(settings.prometheus_port)

    store = RedisQueueStore.from_url(settings.redis_url)
    transport = build_transport(settings)
    runner = QueueRunner(store, transport, settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(runner.stop()))

    try:
        await runner.start()
    finally:
        await transport.close()
        await store.close()


def run() -> None:
    """Run the queue process."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
