"""
Scheduler for delayed jobs.

Periodically promotes due jobs from the schedule set into the ready stream.
Promotion is ordered by due time and bounded per tick.
"""

import logging

from mailqueue.config import Settings, get_settings
from mailqueue.constants import SPAN_PROMOTE_SCHEDULED
from mailqueue.observability.tracing import get_tracer
from mailqueue.queue.keys import QueueKeys
from mailqueue.runtime import Clock, RunningFlag, now_ms
from mailqueue.store.base import QueueStore

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Moves due delayed jobs into the ready stream.

    Each batch is moved with one atomic store operation, so a crash between
    removing a member and appending it can neither drop nor duplicate a job.
    """

    def __init__(
        self,
        store: QueueStore,
        keys: QueueKeys,
        running: RunningFlag,
        *,
        interval_seconds: float = 1.0,
        batch_limit: int = 100,
        clock: Clock = now_ms,
    ):
        self._store = store
        self._keys = keys
        self._running = running
        self.interval = interval_seconds
        self.batch_limit = batch_limit
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: QueueStore,
        running: RunningFlag,
        settings: Settings | None = None,
        clock: Clock = now_ms,
    ) -> "Scheduler":
        settings = settings or get_settings()
        return cls(
            store,
            QueueKeys.from_settings(settings),
            running,
            interval_seconds=settings.scheduler_interval_seconds,
            batch_limit=settings.scheduler_batch_limit,
            clock=clock,
        )

    async def start(self) -> None:
        """Run promotion ticks until the running flag is cleared."""
        logger.info(f"Scheduler starting with interval {self.interval}s")

        while self._running.is_running:
            try:
                promoted = await self.promote_scheduled()
                if promoted > 0:
                    logger.info(f"Promoted {promoted} scheduled jobs")
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            await self._running.sleep(self.interval)

        logger.info("Scheduler stopped")

    async def promote_scheduled(self, limit: int | None = None) -> int:
        """
        Move up to `limit` due jobs, earliest due first, into the ready stream.

        Returns:
            Number of jobs promoted.
        """
        limit = limit or self.batch_limit
        now = self._clock()

        due = await self._store.sorted_set_range_by_score(self._keys.schedule, 0, now, limit)
        if not due:
            return 0

        with get_tracer().start_as_current_span(SPAN_PROMOTE_SCHEDULED) as span:
            span.set_attribute("due", len(due))
            moved = await self._store.move_to_stream(self._keys.schedule, self._keys.stream, due)
            span.set_attribute("moved", moved)

        if moved < len(due):
            logger.debug(
                "Some due jobs were promoted concurrently",
                extra={"due": len(due), "moved": moved},
            )
        return moved
