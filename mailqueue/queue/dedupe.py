"""
Dedupe markers.

A marker is a transient key holding the id of the job that owns a dedupe
key. It is placed at enqueue time, kept alive while the job is scheduled,
and removed once the job is delivered or dead-lettered.
"""

import hashlib
import json
import logging
from typing import Any

from mailqueue.config import Settings
from mailqueue.runtime import Clock, now_ms
from mailqueue.store.base import QueueStore
from mailqueue.types.job import Job

logger = logging.getLogger(__name__)

MIN_MARKER_TTL_MS = 1000


def derive_dedupe_key(purpose: str, payload: dict[str, Any]) -> str:
    """Dedupe key for callers that pass none: identical purpose and payload collide."""
    canonical = json.dumps({"purpose": purpose, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class DedupeMarkers:
    """Manages dedupe marker keys in the store."""

    def __init__(
        self,
        store: QueueStore,
        prefix: str,
        *,
        enabled: bool = True,
        ttl_ms: int = 6 * 60 * 60 * 1000,
        grace_ms: int = 15 * 60 * 1000,
        clock: Clock = now_ms,
    ):
        self._store = store
        self._prefix = prefix
        self.enabled = enabled
        self.ttl_ms = ttl_ms
        self.grace_ms = grace_ms
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: QueueStore,
        settings: Settings,
        clock: Clock = now_ms,
    ) -> "DedupeMarkers":
        return cls(
            store,
            settings.dedupe_key_prefix,
            enabled=settings.queue_dedupe_enabled,
            ttl_ms=settings.queue_dedupe_ttl_ms,
            grace_ms=settings.queue_dedupe_grace_ms,
            clock=clock,
        )

    def key_for(self, job: Job) -> str | None:
        """Marker key for a job, or None if the job is not deduplicated."""
        if not self.enabled or not job.dedupe_key:
            return None
        normalized = job.dedupe_key.strip()
        if not normalized:
            return None
        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
        return f"{self._prefix}:{digest}"

    def ttl_for(self, job: Job) -> int:
        """
        Marker lifetime in ms.

        Long enough to cover the job's remaining delay plus a grace period,
        so a scheduled job never loses its marker before it runs.
        """
        base = job.dedupe_ttl_ms or self.ttl_ms
        future_delay = (job.available_after or 0) - self._clock()
        required = max(
            base,
            future_delay + self.grace_ms if future_delay > 0 else 0,
            (job.delay_ms or 0) + self.grace_ms,
        )
        return max(required, self.grace_ms, MIN_MARKER_TTL_MS)

    async def acquire(self, job: Job) -> tuple[bool, str | None]:
        """
        Place the marker for a job.

        Returns:
            Tuple of (acquired, existing_job_id). `acquired` is True when the
            job has no dedupe key or the marker was placed.

        Raises:
            StoreUnavailableError: If the store call fails.
        """
        key = self.key_for(job)
        if key is None:
            return True, None

        if await self._store.key_set_if_absent(key, job.id, self.ttl_for(job)):
            return True, None

        existing = await self._store.key_get(key)
        return False, existing

    async def refresh(self, job: Job) -> None:
        """Extend the marker so it outlives the job's new due time. Best-effort."""
        key = self.key_for(job)
        if key is None:
            return
        try:
            await self._store.key_expire(key, self.ttl_for(job))
        except Exception as e:
            logger.debug(
                "Dedupe marker refresh failed",
                extra={"job_id": job.id, "error": str(e)},
            )

    async def release(self, job: Job) -> None:
        """Remove the marker once the job is terminal. Best-effort."""
        key = self.key_for(job)
        if key is None:
            return
        try:
            await self._store.key_delete(key)
        except Exception as e:
            logger.warning(
                "Dedupe marker release failed",
                extra={"job_id": job.id, "error": str(e)},
            )
