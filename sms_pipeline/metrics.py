"""
Prometheus metrics for the SMS pipeline.

HTTP traffic is recorded by RequestLoggingMiddleware; the dispatcher,
reconciler and throttle dependency record their own outcomes.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "path"],
)

sms_send_total = Counter(
    "sms_send_total",
    "Single-message dispatch results",
    labelnames=["result"],  # sent | failed
)

bulk_batch_size = Histogram(
    "sms_bulk_batch_size",
    "Recipients per bulk send",
    buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500),
)

webhook_requests_total = Counter(
    "webhook_requests_total",
    "Delivery-status callback outcomes",
    labelnames=["result"],
)

throttle_decisions_total = Counter(
    "throttle_decisions_total",
    "Throttle guard decisions",
    labelnames=["guard", "result"],  # allowed | denied
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_sms_outcome(success: bool) -> None:
    sms_send_total.labels(result="sent" if success else "failed").inc()


def record_bulk_batch(size: int) -> None:
    bulk_batch_size.observe(size)


def record_webhook_outcome(result: str) -> None:
    """
    Count one callback outcome.

    Args:
        result: applied, unchanged, unmatched, ignored, invalid, error,
            invalid_signature or unknown_source
    """
    webhook_requests_total.labels(result=result).inc()


def record_throttle_decision(guard: str, allowed: bool) -> None:
    throttle_decisions_total.labels(guard=guard, result="allowed" if allowed else "denied").inc()


def render_metrics() -> tuple[bytes, str]:
    """Current registry in text exposition format, with its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
