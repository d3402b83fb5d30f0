"""Prometheus metrics collection for the service.

Tracks HTTP traffic, job lifecycle outcomes, file transfers and admission
rejections.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("mediadrop", "mediadrop application information")

# HTTP request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# Job metrics
jobs_submitted_total = Counter(
    "jobs_submitted_total",
    "Total download jobs submitted by requested format",
    ["format"],
)

jobs_finished_total = Counter(
    "jobs_finished_total",
    "Total download jobs reaching a terminal state",
    ["state"],
)

job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Time from submission to terminal state in seconds",
    ["state"],
    buckets=[5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0],
)

active_jobs = Gauge(
    "active_jobs",
    "Number of jobs whose extractor is still running",
)

jobs_evicted_total = Counter(
    "jobs_evicted_total",
    "Total jobs removed from the registry by reason",
    ["reason"],
)

# Transfer metrics
transfers_total = Counter(
    "transfers_total",
    "Total file transfers by outcome",
    ["outcome"],
)

transfer_bytes_total = Counter(
    "transfer_bytes_total",
    "Total bytes streamed to clients",
)

# Admission metrics
rate_limit_exceeded_total = Counter(
    "rate_limit_exceeded_total",
    "Total submissions rejected by the rate limiter",
)

# Error metrics
errors_total = Counter(
    "errors_total",
    "Total errors by error code and endpoint",
    ["error_code", "endpoint"],
)


class MetricsCollector:
    """Static helpers for recording metrics throughout the application."""

    @staticmethod
    def record_request(
        method: str,
        endpoint: str,
        status: int,
        duration: float,
    ) -> None:
        """Record HTTP request metrics.

        Args:
            method: HTTP method (GET, POST, etc.).
            endpoint: Normalized endpoint path.
            status: HTTP response status code.
            duration: Request duration in seconds.
        """
        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint,
        ).observe(duration)

    @staticmethod
    def record_job_submitted(media_format: str) -> None:
        jobs_submitted_total.labels(format=media_format).inc()

    @staticmethod
    def record_job_finished(state: str, duration: float) -> None:
        """Record a job reaching ``completed`` or ``error``.

        Args:
            state: Terminal state value.
            duration: Seconds since the job was created.
        """
        jobs_finished_total.labels(state=state).inc()
        job_duration_seconds.labels(state=state).observe(max(duration, 0.0))

    @staticmethod
    def update_active_jobs(count: int) -> None:
        active_jobs.set(count)

    @staticmethod
    def record_eviction(reason: str) -> None:
        """Record a job eviction ('consumed', 'expired' or 'shutdown')."""
        jobs_evicted_total.labels(reason=reason).inc()

    @staticmethod
    def record_transfer(outcome: str, size: int) -> None:
        """Record a finished transfer.

        Args:
            outcome: 'complete' when drained to EOF, 'aborted' otherwise.
            size: Bytes actually sent.
        """
        transfers_total.labels(outcome=outcome).inc()
        if size > 0:
            transfer_bytes_total.inc(size)

    @staticmethod
    def record_rate_limit_exceeded() -> None:
        rate_limit_exceeded_total.inc()

    @staticmethod
    def record_error(error_code: str, endpoint: str) -> None:
        """Record an error occurrence.

        Args:
            error_code: Error code from ErrorCode class.
            endpoint: Endpoint where the error occurred.
        """
        errors_total.labels(error_code=error_code, endpoint=endpoint).inc()


def initialize_metrics(version: str) -> None:
    """Initialize application metrics with version information.

    Should be called during application startup.

    Args:
        version: Application version string.
    """
    app_info.info({"version": version})
