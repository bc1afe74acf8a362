"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class DepthBucket(StrEnum):
    """Storage locations sampled by the queue monitor."""

    READY = "ready"
    SCHEDULED = "scheduled"
    DEAD_LETTER = "dead_letter"


class RecordOutcome(StrEnum):
    """
    Result of processing a single stream entry.

    - DELIVERED: transport succeeded, entry acknowledged
    - RETRIED: delivery failed, job rescheduled into the schedule set
    - DEAD_LETTERED: attempts exhausted, job moved to the dead-letter stream
    - RESCHEDULED: read before its due time, moved back to the schedule set
    - DISCARDED: poison payload, acknowledged and dropped
    """

    DELIVERED = "delivered"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    RESCHEDULED = "rescheduled"
    DISCARDED = "discarded"


# Default values
DEFAULT_PURPOSE = "generic"
DEFAULT_MAX_ATTEMPTS = 5
PAYLOAD_FIELD = "payload"
STREAM_START_ID = "0-0"

# Metrics names
METRIC_QUEUE_DEPTH = "queue_depth"
METRIC_JOBS_ENQUEUED = "queue_jobs_enqueued"
METRIC_JOBS_DEDUPLICATED = "queue_jobs_deduplicated"
METRIC_JOBS_DELIVERED = "queue_jobs_delivered"
METRIC_JOBS_RETRIED = "queue_jobs_retried"
METRIC_JOBS_FAILED = "queue_jobs_failed"
METRIC_JOBS_DISCARDED = "queue_jobs_discarded"
METRIC_JOBS_RECOVERED = "queue_jobs_recovered"
METRIC_DELIVERY_DURATION = "queue_delivery_duration_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_PROMOTE_SCHEDULED = "promote_scheduled"
SPAN_DELIVER_JOB = "deliver_job"
SPAN_RECOVER_PENDING = "recover_pending"
