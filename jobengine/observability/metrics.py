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

from jobengine.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_RETRIED,
    METRIC_QUEUE_DEPTH,
    METRIC_STALE_JOBS_RECOVERED,
    METRIC_WEBHOOK_ATTEMPTS,
    METRIC_WEBHOOK_DELIVERIES,
    METRIC_WEBHOOKS_DISABLED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job engine.

    Collects metrics for:
    - Queue depth
    - Job enqueues, claims, outcomes and manual retries
    - Job execution duration
    - Stale job recovery
    - Webhook delivery outcomes, attempts per delivery and disables
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
            "Number of pending jobs",
            ["tenant_id"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by workers",
            ["worker_id"],
            registry=self._registry,
        )

        # status is the job status after the handler returned
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job executions by resulting status",
            ["job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of failed jobs re-armed by retry",
            registry=self._registry,
        )

        self.stale_jobs_recovered = Counter(
            METRIC_STALE_JOBS_RECOVERED,
            "Total number of stale running jobs recovered",
            ["outcome"],
            registry=self._registry,
        )

        self.webhook_deliveries = Counter(
            METRIC_WEBHOOK_DELIVERIES,
            "Total number of webhook deliveries by outcome",
            ["event_type", "status"],
            registry=self._registry,
        )

        self.webhook_attempts = Histogram(
            METRIC_WEBHOOK_ATTEMPTS,
            "HTTP attempts consumed per webhook delivery",
            buckets=(1, 2, 3, 4, 5, 10, 20),
            registry=self._registry,
        )

        self.webhooks_disabled = Counter(
            METRIC_WEBHOOKS_DISABLED,
            "Total number of webhooks disabled after consecutive failures",
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(job_type=job_type).inc()

    def record_jobs_claimed(self, worker_id: str, count: int = 1) -> None:
        """Record claimed jobs."""
        self.jobs_claimed.labels(worker_id=worker_id).inc(count)

    def record_job_finished(
        self,
        job_type: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one execution."""
        self.jobs_finished.labels(job_type=job_type, status=status).inc()
        self.job_duration.labels(job_type=job_type, status=status).observe(
            duration_seconds
        )

    def record_job_retried(self) -> None:
        """Record a manual retry."""
        self.jobs_retried.inc()

    def record_stale_jobs(self, rearmed: int, failed: int) -> None:
        """Record stale job recovery."""
        if rearmed:
            self.stale_jobs_recovered.labels(outcome="rearmed").inc(rearmed)
        if failed:
            self.stale_jobs_recovered.labels(outcome="failed").inc(failed)

    def record_webhook_delivery(self, event_type: str, status: str, attempts: int) -> None:
        """Record a webhook delivery outcome."""
        self.webhook_deliveries.labels(event_type=event_type, status=status).inc()
        if attempts > 0:
            self.webhook_attempts.observe(attempts)

    def record_webhook_disabled(self) -> None:
        """Record a webhook disable transition."""
        self.webhooks_disabled.inc()

    def update_queue_depth(self, tenant_id: str, depth: int) -> None:
        """Update queue depth for a tenant."""
        self.queue_depth.labels(tenant_id=tenant_id).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def start_server(self, port: int) -> None:
        """Serve this registry over HTTP for Prometheus to scrape."""
        start_http_server(port, registry=self._registry)


def setup_metrics(registry: CollectorRegistry | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector(registry)
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
