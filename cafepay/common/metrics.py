"""Prometheus metric definitions for the checkout proxy."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter(
    "payment_requests_total",
    "Total payment requests by operation",
    ["service", "operation"],
)
payment_success_total = Counter(
    "payment_success_total",
    "Total successful payment operations",
    ["service", "operation"],
)
payment_failure_total = Counter(
    "payment_failure_total",
    "Total failed payment operations",
    ["service", "operation", "error_type"],
)
payment_latency_seconds = Histogram(
    "payment_latency_seconds",
    "Payment operation latency seconds",
    ["service", "operation"],
)
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
upstream_requests_total = Counter(
    "upstream_requests_total",
    "Outbound calls to the backend or payment provider",
    ["service", "dependency", "outcome"],
)
upstream_request_duration_seconds = Histogram(
    "upstream_request_duration_seconds",
    "Outbound call duration seconds",
    ["service", "dependency"],
)
recording_warnings_total = Counter(
    "recording_warnings_total",
    "Provider charges that succeeded but could not be recorded in the backend",
    ["service", "operation"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Provider webhook events received",
    ["service", "event_type"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
