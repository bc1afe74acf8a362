"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from mailqueue.constants import (
    METRIC_DELIVERY_DURATION,
    METRIC_JOBS_DEDUPLICATED,
    METRIC_JOBS_DELIVERED,
    METRIC_JOBS_DISCARDED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FAILED,
    METRIC_JOBS_RECOVERED,
    METRIC_JOBS_RETRIED,
    METRIC_QUEUE_DEPTH,
    DepthBucket,
)
from mailqueue.types.job import QueueDepth

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the email queue.

    Collects metrics for:
    - Backlog depth per storage bucket
    - Enqueue, delivery, retry and dead-letter counts per purpose
    - Discarded poison payloads and recovered entries
    - Delivery duration
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per queue storage bucket",
            ["bucket"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs accepted by the producer",
            ["purpose"],
            registry=self._registry,
        )

        self.jobs_deduplicated = Counter(
            METRIC_JOBS_DEDUPLICATED,
            "Total number of submissions suppressed by a dedupe marker",
            ["purpose"],
            registry=self._registry,
        )

        self.jobs_delivered = Counter(
            METRIC_JOBS_DELIVERED,
            "Total number of jobs delivered",
            ["purpose"],
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of retries scheduled",
            ["purpose"],
            registry=self._registry,
        )

        self.jobs_failed = Counter(
            METRIC_JOBS_FAILED,
            "Total number of jobs moved to the dead-letter stream",
            ["purpose"],
            registry=self._registry,
        )

        self.jobs_discarded = Counter(
            METRIC_JOBS_DISCARDED,
            "Total number of poison entries acknowledged and dropped",
            ["reason"],
            registry=self._registry,
        )

        self.jobs_recovered = Counter(
            METRIC_JOBS_RECOVERED,
            "Total number of stale entries reclaimed by the recovery sweep",
            registry=self._registry,
        )

        self.delivery_duration = Histogram(
            METRIC_DELIVERY_DURATION,
            "Transport delivery duration in seconds",
            ["purpose", "outcome"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

    def record_job_enqueued(self, purpose: str) -> None:
        self.jobs_enqueued.labels(purpose=purpose).inc()

    def record_job_deduplicated(self, purpose: str) -> None:
        self.jobs_deduplicated.labels(purpose=purpose).inc()

    def record_job_delivered(self, purpose: str, duration_seconds: float) -> None:
        """Record a successful delivery."""
        self.jobs_delivered.labels(purpose=purpose).inc()
        self.delivery_duration.labels(purpose=purpose, outcome="success").observe(
            duration_seconds
        )

    def record_delivery_failed(self, purpose: str, duration_seconds: float) -> None:
        """Record a failed delivery attempt, before the retry decision."""
        self.delivery_duration.labels(purpose=purpose, outcome="failure").observe(
            duration_seconds
        )

    def record_job_retried(self, purpose: str) -> None:
        self.jobs_retried.labels(purpose=purpose).inc()

    def record_job_failed(self, purpose: str) -> None:
        self.jobs_failed.labels(purpose=purpose).inc()

    def record_job_discarded(self, reason: str) -> None:
        self.jobs_discarded.labels(reason=reason).inc()

    def record_jobs_recovered(self, count: int) -> None:
        self.jobs_recovered.inc(count)

    def update_queue_depth(self, depth: QueueDepth) -> None:
        """Publish backlog sizes for all buckets."""
        self.queue_depth.labels(bucket=DepthBucket.READY).set(depth.ready)
        self.queue_depth.labels(bucket=DepthBucket.SCHEDULED).set(depth.scheduled)
        self.queue_depth.labels(bucket=DepthBucket.DEAD_LETTER).set(depth.dead_letter)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP for Prometheus scraping."""
    start_http_server(port)
