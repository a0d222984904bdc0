"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, Info, generate_latest

from grattia.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    STATUS = "status"
    SOURCE = "source"


class GrattiaMetrics:
    """
    Centralized metrics for the Grattia API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Points movements (recognition, platform adjustments)
    - Monthly allocation runs
    - Subscription changes and Stripe calls
    - Catalog imports
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "grattia_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "grattia_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "grattia_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "grattia_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Points Metrics
        # ====================================================================
        self.points_moved_total = Counter(
            "grattia_points_moved_total",
            "Total points moved by operation",
            [MetricLabels.OPERATION],
        )

        self.points_operations_total = Counter(
            "grattia_points_operations_total",
            "Total points operations by outcome",
            [MetricLabels.OPERATION, "success"],
        )

        # ====================================================================
        # Allocation Metrics
        # ====================================================================
        self.allocation_companies_total = Counter(
            "grattia_allocation_companies_total",
            "Companies processed by the monthly allocation job",
            [MetricLabels.STATUS],
        )

        self.allocation_members_total = Counter(
            "grattia_allocation_members_total",
            "Member allocations created by the monthly allocation job",
        )

        self.allocation_run_duration_seconds = Histogram(
            "grattia_allocation_run_duration_seconds",
            "Monthly allocation run duration in seconds",
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        # ====================================================================
        # Billing Metrics
        # ====================================================================
        self.subscription_changes_total = Counter(
            "grattia_subscription_changes_total",
            "Subscription state changes",
            ["event_type"],
        )

        self.stripe_calls_total = Counter(
            "grattia_stripe_calls_total",
            "Stripe API calls",
            [MetricLabels.OPERATION, "success"],
        )

        # ====================================================================
        # Catalog Metrics
        # ====================================================================
        self.catalog_imports_total = Counter(
            "grattia_catalog_imports_total",
            "Reward catalog imports",
            [MetricLabels.SOURCE, "success"],
        )

        # ====================================================================
        # Database / Error Metrics
        # ====================================================================
        self.db_write_verifications_total = Counter(
            "grattia_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        self.errors_total = Counter(
            "grattia_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_points_operation(self, operation: str, success: bool, points: int = 0) -> None:
        """Record a points movement (recognition, grant, removal, redemption)."""
        self.points_operations_total.labels(operation=operation, success=str(success)).inc()
        if success and points > 0:
            self.points_moved_total.labels(operation=operation).inc(points)

    def record_allocation_result(self, status: str, allocations: int) -> None:
        """Record the outcome for one company in an allocation run."""
        self.allocation_companies_total.labels(status=status).inc()
        if allocations > 0:
            self.allocation_members_total.inc(allocations)

    def record_subscription_change(self, event_type: str) -> None:
        self.subscription_changes_total.labels(event_type=event_type).inc()

    def record_stripe_call(self, operation: str, success: bool) -> None:
        self.stripe_calls_total.labels(operation=operation, success=str(success)).inc()

    def record_catalog_import(self, source: str, success: bool) -> None:
        self.catalog_imports_total.labels(source=source, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GrattiaMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/points/give", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        """Start tracking."""
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def render_metrics() -> bytes:
    """Render all registered metrics in the Prometheus exposition format."""
    return generate_latest(REGISTRY)
