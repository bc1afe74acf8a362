"""
Job producer.

Encodes jobs and places them either on the ready stream (due now) or in the
schedule set (due later), maintaining dedupe markers along the way.
"""

import logging
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from mailqueue.config import Settings, get_settings
from mailqueue.constants import DEFAULT_PURPOSE, PAYLOAD_FIELD, SPAN_ENQUEUE_JOB
from mailqueue.exceptions import InvalidJobError, StoreUnavailableError
from mailqueue.observability.metrics import MetricsCollector, get_metrics
from mailqueue.observability.tracing import get_tracer
from mailqueue.queue.dedupe import DedupeMarkers, derive_dedupe_key
from mailqueue.queue.keys import QueueKeys
from mailqueue.runtime import Clock, now_ms
from mailqueue.store.base import QueueStore
from mailqueue.types.job import EnqueueResult, Job

logger = logging.getLogger(__name__)


class Producer:
    """
    Entry point for submitting email jobs.

    Store failures while writing the job propagate to the caller as
    `StoreUnavailableError`; dedupe marker placement is best-effort.
    """

    def __init__(
        self,
        store: QueueStore,
        keys: QueueKeys,
        dedupe: DedupeMarkers,
        *,
        default_max_attempts: int = 5,
        dedupe_from_payload: bool = False,
        metrics: MetricsCollector | None = None,
        clock: Clock = now_ms,
    ):
        self._store = store
        self._keys = keys
        self._dedupe = dedupe
        self._default_max_attempts = default_max_attempts
        self._dedupe_from_payload = dedupe_from_payload
        self._metrics = metrics or get_metrics()
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: QueueStore,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock = now_ms,
    ) -> "Producer":
        settings = settings or get_settings()
        return cls(
            store,
            QueueKeys.from_settings(settings),
            DedupeMarkers.from_settings(store, settings, clock=clock),
            default_max_attempts=settings.queue_max_attempts,
            dedupe_from_payload=settings.queue_dedupe_from_payload,
            metrics=metrics,
            clock=clock,
        )

    def build_job(
        self,
        payload: dict[str, Any],
        *,
        purpose: str | None = None,
        job_id: str | None = None,
        dedupe_key: str | None = None,
        delay_ms: int = 0,
        max_attempts: int | None = None,
    ) -> Job:
        """
        Build a job from transport payload and queue options.

        Args:
            payload: Data for the transport (recipient, template, variables).
            purpose: Job kind for metrics and logs.
            job_id: Explicit id; generated when omitted.
            dedupe_key: Suppresses concurrent duplicates of the same logical job.
                Derived from purpose and payload when omitted and
                `dedupe_from_payload` is set.
            delay_ms: Delay before the first attempt.
            max_attempts: Attempt ceiling; settings default when omitted.

        Raises:
            InvalidJobError: If the options do not form a valid job.
        """
        fields: dict[str, Any] = {"payload": payload}
        if purpose:
            fields["purpose"] = purpose
        if job_id:
            fields["id"] = job_id
        if dedupe_key is None and self._dedupe_from_payload:
            dedupe_key = derive_dedupe_key(purpose or DEFAULT_PURPOSE, payload)
        if dedupe_key:
            fields["dedupe_key"] = dedupe_key
        if max_attempts is not None:
            fields["max_attempts"] = max_attempts
        if delay_ms > 0:
            fields["available_after"] = self._clock() + delay_ms
        try:
            return Job(**fields)
        except ValidationError as e:
            raise InvalidJobError(f"Invalid job options: {e.error_count()} errors") from e

    async def enqueue(self, job: Job) -> EnqueueResult:
        """
        Submit a job.

        Args:
            job: The job. Missing id and attempt ceiling get defaults.

        Returns:
            EnqueueResult; `accepted` is False when a dedupe marker for the
            same key is held by an uncompleted job.

        Raises:
            InvalidJobError: If the job fails validation.
            StoreUnavailableError: If the job could not be written.
        """
        now = self._clock()
        job = self._prepare(job, now)
        delayed = not job.is_due(now)

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job_id", job.id)
            span.set_attribute("purpose", job.purpose)
            span.set_attribute("delayed", delayed)

            acquired, existing_job_id = await self._claim_dedupe(job)
            if not acquired:
                self._metrics.record_job_deduplicated(job.purpose)
                logger.info(
                    "Email job deduplicated",
                    extra={
                        "job_id": job.id,
                        "purpose": job.purpose,
                        "existing_job_id": existing_job_id,
                    },
                )
                return EnqueueResult(
                    accepted=False,
                    job_id=existing_job_id or job.id,
                    reason="duplicate",
                )

            try:
                if delayed:
                    await self.schedule_job(job)
                else:
                    await self.push_to_stream(job)
            except Exception:
                await self._dedupe.release(job)
                raise

        self._metrics.record_job_enqueued(job.purpose)
        logger.info(
            "Email job enqueued",
            extra={
                "job_id": job.id,
                "purpose": job.purpose,
                "delay_ms": job.delay_ms or 0,
                "dedupe": job.dedupe_key is not None,
            },
        )
        return EnqueueResult(
            accepted=True,
            job_id=job.id,
            scheduled_for=job.available_after if delayed else None,
        )

    async def enqueue_email(self, payload: dict[str, Any], **options: Any) -> EnqueueResult:
        """Build and submit a job in one call. Options as for `build_job`."""
        return await self.enqueue(self.build_job(payload, **options))

    async def push_to_stream(self, job: Job) -> str:
        """Append a job to the ready stream. Returns the entry id."""
        entry_id = await self._store.stream_append(self._keys.stream, {PAYLOAD_FIELD: job.encode()})
        await self._dedupe.refresh(job)
        return entry_id

    async def schedule_job(self, job: Job) -> None:
        """Add a job to the schedule set at its `available_after` time."""
        if job.available_after is None:
            raise InvalidJobError(f"Job {job.id} has no available_after to schedule at")
        await self._store.sorted_set_add(self._keys.schedule, job.encode(), job.available_after)
        await self._dedupe.refresh(job)

    def _prepare(self, job: Job, now: int) -> Job:
        """Apply defaults and bookkeeping fields to a copy of the job."""
        update: dict[str, Any] = {"queued_at": now}
        if not job.id.strip():
            update["id"] = uuid4().hex
        if "max_attempts" not in job.model_fields_set:
            update["max_attempts"] = self._default_max_attempts
        if job.created_at is None:
            update["created_at"] = now
        if job.available_after is not None and job.available_after > now:
            update["delay_ms"] = job.available_after - now
        prepared = job.model_copy(update=update)

        if prepared.attempts >= prepared.max_attempts:
            raise InvalidJobError(f"Job {prepared.id} has no attempts left")

        if self._dedupe.key_for(prepared) is not None and prepared.dedupe_ttl_ms is None:
            prepared = prepared.model_copy(
                update={
                    "dedupe_ttl_ms": max(
                        self._dedupe.ttl_ms,
                        (prepared.delay_ms or 0) + self._dedupe.grace_ms,
                    )
                }
            )
        return prepared

    async def _claim_dedupe(self, job: Job) -> tuple[bool, str | None]:
        try:
            return await self._dedupe.acquire(job)
        except StoreUnavailableError as e:
            logger.warning(
                "Dedupe marker unavailable, enqueueing without it",
                extra={"job_id": job.id, "error": str(e)},
            )
            return True, None
