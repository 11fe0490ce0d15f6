"""Prometheus metric definitions for the fulfillment service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
payment_callbacks_total = Counter(
    "payment_callbacks_total",
    "Payment gateway callbacks by result",
    ["service", "result"],
)
payment_verification_seconds = Histogram(
    "payment_verification_seconds",
    "Latency of payment verification calls",
    ["service"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate payment events skipped",
    ["service", "stage"],
)
fulfillment_failures_total = Counter(
    "fulfillment_failures_total",
    "Fulfillment boundaries rolled back",
    ["service", "error_type"],
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Applied order status transitions",
    ["service", "from_status", "to_status"],
)
stock_movements_total = Counter(
    "stock_movements_total",
    "Stock movements appended by reason",
    ["service", "reason"],
)
lock_timeouts_total = Counter("lock_timeouts_total", "Lock waits that timed out", ["service"])
reservations_expired_total = Counter(
    "reservations_expired_total",
    "PENDING orders cancelled because their reservation expired",
    ["service"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
outbox_dead_total = Counter(
    "outbox_dead_total",
    "Outbox events abandoned after exhausting retries",
    ["service", "topic"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
