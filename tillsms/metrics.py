"""
Prometheus metrics for the dashboard API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- SMS gateway call counter (endpoint, outcome)
- SMS message transition counter (status)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# endpoint: sendsms, bulksms, smsstatus, check_sms_balance
# outcome: ok, error
sms_gateway_requests_total = Counter(
    "sms_gateway_requests_total",
    "FluxSMS gateway calls by endpoint and outcome",
    labelnames=["endpoint", "outcome"]
)

# status: sent, failed, delivered, queued (resend)
sms_message_transitions_total = Counter(
    "sms_message_transitions_total",
    "SMS message status transitions",
    labelnames=["status"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_gateway_call(endpoint: str, ok: bool) -> None:
    sms_gateway_requests_total.labels(endpoint=endpoint, outcome="ok" if ok else "error").inc()


def record_message_transitions(status: str, count: int = 1) -> None:
    if count > 0:
        sms_message_transitions_total.labels(status=status).inc(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
