"""
Prometheus metrics for the forum service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Forum write outcome counter (operation, result)
- Thread degradation counter (kind) for data the read path had to trim
- Reply index resync counter (result)

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

# operation: create, delete
# result: created, deleted, bad_params, not_found, unauthorized, internal_error, index_error
forum_writes_total = Counter(
    "forum_writes_total",
    "Forum write outcomes",
    labelnames=["operation", "result"]
)

# kind: cycle, max_depth, missing_ancestor, stale_index_entry
thread_degradations_total = Counter(
    "thread_degradations_total",
    "Corrupted or stale thread data trimmed on read",
    labelnames=["kind"]
)

reply_index_resyncs_total = Counter(
    "reply_index_resyncs_total",
    "Reply index resync runs",
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
        path: Route template (e.g. /messages/{message_id}) to keep label cardinality low
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


def record_forum_write(operation: str, result: str) -> None:
    forum_writes_total.labels(operation=operation, result=result).inc()


def record_thread_degradation(kind: str, amount: int = 1) -> None:
    thread_degradations_total.labels(kind=kind).inc(amount)


def record_resync(result: str) -> None:
    reply_index_resyncs_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
