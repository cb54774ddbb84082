"""
Prometheus metrics for the ingestion service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (event, result)
- Queue outcome counter (result)
- Realtime fanout counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: processed, duplicate, queued, deferred, ignored, invalid_signature,
# validation_error, unknown_event, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["event", "result"]
)

# result: acked, requeued, dead_lettered
queue_envelopes_total = Counter(
    "queue_envelopes_total",
    "Queue envelope outcomes",
    labelnames=["result"]
)

# result: delivered, dropped
fanout_deliveries_total = Counter(
    "fanout_deliveries_total",
    "Realtime fanout deliveries per subscriber",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known, so instance names do not become labels
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


def record_webhook_outcome(event: str, result: str) -> None:
    webhook_requests_total.labels(event=event, result=result).inc()


def record_queue_outcome(result: str) -> None:
    queue_envelopes_total.labels(result=result).inc()


def record_fanout(result: str) -> None:
    fanout_deliveries_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
