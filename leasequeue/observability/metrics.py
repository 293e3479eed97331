"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from leasequeue.constants import (
    METRIC_CHECKOUT_CONFLICTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_RESOLVED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth
    - Enqueued jobs and lease resolutions
    - Job execution duration
    - Lease acquisition, checkout races and lease expiry
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Queue depth gauge (by queue)
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of waiting jobs in the queue",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "job_type"],
            registry=self._registry,
        )

        # Lease resolutions (completed / failed / dead)
        self.jobs_resolved = Counter(
            METRIC_JOBS_RESOLVED,
            "Total number of resolved leases",
            ["queue", "job_type", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases recovered",
            ["queue"],
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["queue", "job_type"],
            registry=self._registry,
        )

        # Conditional writes that lost to a concurrent poller
        self.checkout_conflicts = Counter(
            METRIC_CHECKOUT_CONFLICTS,
            "Total number of checkout attempts that lost a race",
            ["queue"],
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str, job_type: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(queue=queue, job_type=job_type).inc()

    def record_job_resolved(self, queue: str, job_type: str, outcome: str) -> None:
        """Record a lease resolution."""
        self.jobs_resolved.labels(queue=queue, job_type=job_type, outcome=outcome).inc()

    def record_job_duration(
        self,
        job_type: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record how long a handler ran."""
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def record_lease_expired(self, queue: str, count: int = 1) -> None:
        """Record expired leases."""
        self.lease_expired.labels(queue=queue).inc(count)

    def record_lease_acquired(self, queue: str, job_type: str) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(queue=queue, job_type=job_type).inc()

    def record_checkout_conflict(self, queue: str) -> None:
        self.checkout_conflicts.labels(queue=queue).inc()

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update queue depth for a queue."""
        self.queue_depth.labels(queue=queue).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def start_server(self, port: int) -> None:
        """Expose the registry over HTTP for Prometheus to scrape."""
        start_http_server(port, registry=self._registry)


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
