"""
Per-record processing.

Every record read from the ready stream, whether fresh or reclaimed, ends in
exactly one terminal transition: delivered, retried, dead-lettered,
rescheduled or discarded. Each transition that moves a job to another
location writes the new copy and acknowledges the old one atomically.
"""

import logging
import time

from mailqueue.config import Settings, get_settings
from mailqueue.constants import PAYLOAD_FIELD, SPAN_DELIVER_JOB, RecordOutcome
from mailqueue.exceptions import PoisonPayloadError
from mailqueue.observability.metrics import MetricsCollector, get_metrics
from mailqueue.observability.tracing import get_tracer
from mailqueue.queue.backoff import BackoffPolicy
from mailqueue.queue.dedupe import DedupeMarkers
from mailqueue.queue.keys import QueueKeys
from mailqueue.runtime import Clock, now_ms
from mailqueue.store.base import QueueStore, StoreTransaction
from mailqueue.transport.base import EmailTransport
from mailqueue.types.job import Job, LastError, StreamEntry

logger = logging.getLogger(__name__)


def describe_error(error: BaseException) -> str:
    """Human-readable failure message, falling back to the cause or type."""
    message = str(error)
    if not message and error.__cause__ is not None:
        message = str(error.__cause__)
    return message or type(error).__name__


class RecordProcessor:
    """Applies the delivery lifecycle to one stream record at a time."""

    def __init__(
        self,
        store: QueueStore,
        keys: QueueKeys,
        transport: EmailTransport,
        dedupe: DedupeMarkers,
        backoff: BackoffPolicy,
        *,
        metrics: MetricsCollector | None = None,
        clock: Clock = now_ms,
    ):
        self._store = store
        self._keys = keys
        self._transport = transport
        self._dedupe = dedupe
        self._backoff = backoff
        self._metrics = metrics or get_metrics()
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: QueueStore,
        transport: EmailTransport,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock = now_ms,
    ) -> "RecordProcessor":
        settings = settings or get_settings()
        return cls(
            store,
            QueueKeys.from_settings(settings),
            transport,
            DedupeMarkers.from_settings(store, settings, clock=clock),
            BackoffPolicy.from_settings(settings),
            metrics=metrics,
            clock=clock,
        )

    async def process_record(self, entry: StreamEntry) -> RecordOutcome:
        """
        Drive one record to a terminal transition.

        Args:
            entry: A record read from (or reclaimed on) the ready stream.

        Returns:
            The transition that was applied.

        Raises:
            StoreUnavailableError: If a store write fails. The record stays
                pending and is reclaimed later.
        """
        raw = entry.payload
        if not raw:
            # Also seen for entries deleted while pending
            logger.warning(
                "Discarding stream entry without payload",
                extra={"entry_id": entry.entry_id},
            )
            return await self._discard(entry, "missing_payload")

        try:
            job = Job.decode(raw)
        except PoisonPayloadError as e:
            logger.warning(
                "Discarding undecodable stream entry",
                extra={"entry_id": entry.entry_id, "error": str(e)},
            )
            return await self._discard(entry, "malformed")

        now = self._clock()
        if not job.is_due(now):
            return await self._reschedule(entry.entry_id, job)

        start_time = time.perf_counter()
        try:
            with get_tracer().start_as_current_span(SPAN_DELIVER_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("purpose", job.purpose)
                span.set_attribute("attempt", job.attempts + 1)
                await self._transport.deliver(job)
        except Exception as e:
            self._metrics.record_delivery_failed(job.purpose, time.perf_counter() - start_time)
            return await self.handle_failure(entry.entry_id, job, e)

        duration = time.perf_counter() - start_time
        await self._settle(self._store.transaction(), entry.entry_id)
        await self._dedupe.release(job)
        self._metrics.record_job_delivered(job.purpose, duration)

        logger.info(
            "Email job delivered",
            extra={
                "job_id": job.id,
                "purpose": job.purpose,
                "attempts": job.attempts,
                "duration": f"{duration:.2f}s",
            },
        )
        return RecordOutcome.DELIVERED

    async def handle_failure(self, entry_id: str, job: Job, error: BaseException) -> RecordOutcome:
        """
        Record a failed attempt and either schedule a retry or dead-letter the job.

        Args:
            entry_id: Ready-stream entry the job was read from.
            job: The job as read from the stream.
            error: The delivery failure.
        """
        now = self._clock()
        failed = job.model_copy(
            update={
                "attempts": job.attempts + 1,
                "last_error": LastError(message=describe_error(error), at=now),
            }
        )

        if failed.is_exhausted:
            return await self._dead_letter(entry_id, failed.model_copy(update={"failed_at": now}))

        delay = self._backoff.delay_ms(failed.attempts)
        retry = failed.model_copy(update={"available_after": now + delay, "delay_ms": delay})

        await self._settle(
            self._store.transaction().sorted_set_add(
                self._keys.schedule, retry.encode(), retry.available_after
            ),
            entry_id,
        )
        await self._dedupe.refresh(retry)
        self._metrics.record_job_retried(retry.purpose)

        logger.warning(
            "Email job retry scheduled",
            extra={
                "job_id": retry.id,
                "purpose": retry.purpose,
                "attempts": retry.attempts,
                "delay_ms": delay,
                "error": retry.last_error.message,
            },
        )
        return RecordOutcome.RETRIED

    async def _dead_letter(self, entry_id: str, job: Job) -> RecordOutcome:
        await self._settle(
            self._store.transaction().stream_append(
                self._keys.dead_letter, {PAYLOAD_FIELD: job.encode()}
            ),
            entry_id,
        )
        await self._dedupe.release(job)
        self._metrics.record_job_failed(job.purpose)

        logger.error(
            "Email job moved to dead-letter stream",
            extra={
                "job_id": job.id,
                "purpose": job.purpose,
                "attempts": job.attempts,
                "error": job.last_error.message if job.last_error else None,
            },
        )
        return RecordOutcome.DEAD_LETTERED

    async def _reschedule(self, entry_id: str, job: Job) -> RecordOutcome:
        """Return a job that was read before its due time to the schedule set."""
        await self._settle(
            self._store.transaction().sorted_set_add(
                self._keys.schedule, job.encode(), job.available_after
            ),
            entry_id,
        )
        await self._dedupe.refresh(job)

        logger.debug(
            "Email job not yet due, rescheduled",
            extra={"job_id": job.id, "available_after": job.available_after},
        )
        return RecordOutcome.RESCHEDULED

    async def _discard(self, entry: StreamEntry, reason: str) -> RecordOutcome:
        await self._settle(self._store.transaction(), entry.entry_id)
        self._metrics.record_job_discarded(reason)
        return RecordOutcome.DISCARDED

    async def _settle(self, transaction: StoreTransaction, entry_id: str) -> None:
        """Acknowledge and delete a ready-stream entry together with `transaction`'s writes."""
        await (
            transaction.stream_ack(self._keys.stream, self._keys.group, entry_id)
            .stream_delete(self._keys.stream, entry_id)
            .execute()
        )
