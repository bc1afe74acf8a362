"""
Store key names used by the queue.
"""

from dataclasses import dataclass

from mailqueue.config import Settings


@dataclass(frozen=True)
class QueueKeys:
    """
    Single source of truth for the queue's store locations.

    stream       - ready stream (consumer group `group`)
    schedule     - sorted set of delayed jobs, score = due time in epoch ms
    dead_letter  - stream of jobs that exhausted their attempts
    dedupe_prefix - prefix of dedupe marker keys
    """

    stream: str
    group: str
    schedule: str
    dead_letter: str
    dedupe_prefix: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueKeys":
        return cls(
            stream=settings.queue_stream_key,
            group=settings.queue_group_name,
            schedule=settings.schedule_key,
            dead_letter=settings.dead_letter_key,
            dedupe_prefix=settings.dedupe_key_prefix,
        )
