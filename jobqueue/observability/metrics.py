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

from jobqueue.constants import (
    METRIC_EVENTS_DROPPED,
    METRIC_JOB_CLAIMS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_PROMOTED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Jobs per state collection
    - Enqueues and completions per job type
    - Handler execution duration
    - Claim attempts and conflicts
    - Promotions and dropped event messages
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
            "Number of jobs in a state collection",
            ["state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of finished job attempts",
            ["job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler execution duration in seconds",
            ["job_type", "status"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        # outcome: "claimed" or "conflict" (another worker won the race)
        self.job_claims = Counter(
            METRIC_JOB_CLAIMS,
            "Total number of claim attempts",
            ["job_type", "outcome"],
            registry=self._registry,
        )

        self.jobs_promoted = Counter(
            METRIC_JOBS_PROMOTED,
            "Total number of delayed jobs promoted to inactive",
            registry=self._registry,
        )

        self.events_dropped = Counter(
            METRIC_EVENTS_DROPPED,
            "Total number of undecodable event messages dropped",
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(job_type=job_type).inc()

    def record_job_completed(
        self,
        job_type: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a finished attempt."""
        self.jobs_completed.labels(job_type=job_type, status=status).inc()
        self.job_duration.labels(job_type=job_type, status=status).observe(
            duration_seconds
        )

    def record_claim(self, job_type: str, claimed: bool) -> None:
        """Record a claim attempt."""
        outcome = "claimed" if claimed else "conflict"
        self.job_claims.labels(job_type=job_type, outcome=outcome).inc()

    def record_promotions(self, count: int) -> None:
        if count:
            self.jobs_promoted.inc(count)

    def record_event_dropped(self) -> None:
        self.events_dropped.inc()

    def update_queue_depth(self, state: str, depth: int) -> None:
        """Update the size of a state collection."""
        self.queue_depth.labels(state=state).set(depth)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, also expose the registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
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
