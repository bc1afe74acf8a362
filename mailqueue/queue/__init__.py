"""
Queue module.
Contains the producer, scheduler, retry policy and dead-letter tooling.
"""

from mailqueue.queue.backoff import BackoffPolicy
from mailqueue.queue.dead_letter import DeadLetterQueue
from mailqueue.queue.dedupe import DedupeMarkers
from mailqueue.queue.keys import QueueKeys
from mailqueue.queue.producer import Producer
from mailqueue.queue.scheduler import Scheduler

__all__ = [
    "BackoffPolicy",
    "DeadLetterQueue",
    "DedupeMarkers",
    "QueueKeys",
    "Producer",
    "Scheduler",
]
