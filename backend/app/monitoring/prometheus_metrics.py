"""
Prometheus metrics module for the booking payments service.

Service-level timings come from the @measure_operation decorator on
BaseService; the payment-specific counters below are incremented by the
gateway adapter, the ledger writer and the orchestrator.
"""

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
    "booking_payments_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

service_operations_total = Counter(
    "booking_payments_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "booking_payments_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

gateway_calls_total = Counter(
    "booking_payments_gateway_calls_total",
    "Payment gateway calls by operation and outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)

gateway_call_duration_seconds = Histogram(
    "booking_payments_gateway_call_duration_seconds",
    "Payment gateway call latency in seconds",
    ["operation"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

booking_payment_outcomes_total = Counter(
    "booking_payments_operation_outcomes_total",
    "Accept/decline/cancel results by outcome (success or error code)",
    ["operation", "outcome"],
    registry=REGISTRY,
)

ledger_write_failures_total = Counter(
    "booking_payments_ledger_write_failures_total",
    "Ledger writes that failed after money already moved",
    ["record_type"],
    registry=REGISTRY,
)

transfer_reversals_total = Counter(
    "booking_payments_transfer_reversals_total",
    "Transfer reversal attempts by outcome",
    ["outcome"],  # success | failed
    registry=REGISTRY,
)

notifications_outbox_total = Counter(
    "booking_payments_notifications_outbox_total",
    "Outbox delivery outcomes",
    ["status", "event_type"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin facade so callers do not import individual metric objects."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """Record a measured service operation."""
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_gateway_call(operation: str, outcome: str, duration: float) -> None:
        gateway_calls_total.labels(operation=operation, outcome=outcome).inc()
        gateway_call_duration_seconds.labels(operation=operation).observe(max(duration, 0.0))

    @staticmethod
    def record_booking_payment_outcome(operation: str, outcome: str) -> None:
        booking_payment_outcomes_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def inc_ledger_write_failure(record_type: str) -> None:
        ledger_write_failures_total.labels(record_type=record_type).inc()

    @staticmethod
    def inc_transfer_reversal(outcome: str) -> None:
        transfer_reversals_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_notification_outcome(event_type: str, status: str) -> None:
        notifications_outbox_total.labels(status=status, event_type=event_type).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


# Singleton instance
prometheus_metrics = PrometheusMetrics()
