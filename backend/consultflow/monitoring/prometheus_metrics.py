"""
Prometheus metrics module for Consultflow.

Service timings come from @measure_operation; lifecycle counters are
incremented by the booking, webhook, sweeper and invoicing services.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "consultflow_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "consultflow_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "consultflow_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

advisory_failures_total = Counter(
    "consultflow_advisory_failures_total",
    "Advisory side effects (calendar, email, analytics, pdf) that failed and were skipped",
    ["stage"],
    registry=REGISTRY,
)

bookings_created_total = Counter(
    "consultflow_bookings_created_total",
    "Bookings created, by initial status",
    ["status"],
    registry=REGISTRY,
)

booking_compensations_total = Counter(
    "consultflow_booking_compensations_total",
    "Bookings rolled back because the creation-time payment email failed",
    registry=REGISTRY,
)

payment_emails_total = Counter(
    "consultflow_payment_emails_total",
    "Payment request emails by delivery path and outcome",
    ["path", "status"],  # path: creation | sweeper; status: sent | failed
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "consultflow_webhook_events_total",
    "Stripe webhook events handled",
    ["event_type", "outcome"],
    registry=REGISTRY,
)

refunds_total = Counter(
    "consultflow_refunds_total",
    "Refunds issued",
    ["source"],  # stripe | manual
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingOrchestrator')
            operation: Operation/method name (e.g., 'create_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(duration)
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts

        if payload is not None and ts is not None and (now - ts) <= PrometheusMetrics._cache_ttl_seconds:
            return payload

        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
            PrometheusMetrics._cache_ts = monotonic()
            return PrometheusMetrics._cache_payload

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        """Invalidate cached metrics so next scrape refreshes."""
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None

    # Domain helpers
    @staticmethod
    def inc_advisory_failure(stage: str) -> None:
        advisory_failures_total.labels(stage=stage).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_booking_created(status: str) -> None:
        bookings_created_total.labels(status=status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_booking_compensation() -> None:
        booking_compensations_total.inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_payment_email(path: str, status: str) -> None:
        payment_emails_total.labels(path=path, status=status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_webhook_event(event_type: str, outcome: str) -> None:
        webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_refund(source: str) -> None:
        refunds_total.labels(source=source).inc()
        PrometheusMetrics._invalidate_cache()


# Singleton instance
prometheus_metrics = PrometheusMetrics()
