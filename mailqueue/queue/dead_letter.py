"""
Dead-letter stream inspection and replay.
"""

import logging

from mailqueue.config import Settings, get_settings
from mailqueue.constants import PAYLOAD_FIELD
from mailqueue.exceptions import PoisonPayloadError
from mailqueue.queue.keys import QueueKeys
from mailqueue.runtime import Clock, now_ms
from mailqueue.store.base import QueueStore
from mailqueue.types.job import Job

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """Offline tooling over jobs that exhausted their attempts."""

    def __init__(
        self,
        store: QueueStore,
        keys: QueueKeys,
        *,
        clock: Clock = now_ms,
    ):
        self._store = store
        self._keys = keys
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: QueueStore,
        settings: Settings | None = None,
        clock: Clock = now_ms,
    ) -> "DeadLetterQueue":
        settings = settings or get_settings()
        return cls(
            store,
            QueueKeys.from_settings(settings),
            clock=clock,
        )

    async def list_entries(self, count: int = 100) -> list[tuple[str, Job | None]]:
        """
        List dead-lettered jobs, oldest first.

        Returns:
            (entry_id, job) pairs; `job` is None for undecodable entries.
        """
        entries = await self._store.stream_range(self._keys.dead_letter, count=count)
        result: list[tuple[str, Job | None]] = []
        for entry in entries:
            try:
                job = Job.decode(entry.payload or "")
            except PoisonPayloadError:
                job = None
            result.append((entry.entry_id, job))
        return result

    async def replay(self, entry_id: str, reset_attempts: bool = True) -> Job | None:
        """
        Move a dead-lettered job back onto the ready stream.

        Args:
            entry_id: Dead-letter stream entry id.
            reset_attempts: Whether to reset the attempt counter.

        Returns:
            The replayed job, or None if the entry does not exist.

        Raises:
            PoisonPayloadError: If the entry cannot be decoded.
        """
        entries = await self._store.stream_range(
            self._keys.dead_letter, start=entry_id, end=entry_id, count=1
        )
        if not entries:
            return None

        job = Job.decode(entries[0].payload or "")
        update: dict = {
            "failed_at": None,
            "last_error": None,
            "available_after": None,
            "queued_at": self._clock(),
        }
        if reset_attempts:
            update["attempts"] = 0
        elif job.is_exhausted:
            # Allow exactly one more attempt
            update["max_attempts"] = job.attempts + 1
        replayed = job.model_copy(update=update)

        await (
            self._store.transaction()
            .stream_append(self._keys.stream, {PAYLOAD_FIELD: replayed.encode()})
            .stream_delete(self._keys.dead_letter, entry_id)
            .execute()
        )

        logger.info(
            "Job replayed from dead-letter stream",
            extra={"job_id": replayed.id, "entry_id": entry_id, "attempts": replayed.attempts},
        )
        return replayed
