"""
Type definitions for the email queue.
"""

from mailqueue.types.job import (
    EnqueueResult,
    Job,
    LastError,
    QueueDepth,
    StreamEntry,
)

__all__ = [
    "Job",
    "LastError",
    "StreamEntry",
    "QueueDepth",
    "EnqueueResult",
]
