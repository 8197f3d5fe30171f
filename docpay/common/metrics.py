"""Prometheus metric definitions for reconciliation triggers."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


reconciliations_total = Counter(
    "reconciliations_total",
    "Reconciliation attempts by trigger source and outcome",
    ["service", "source", "outcome"],
)
reconciliation_conflicts_total = Counter(
    "reconciliation_conflicts_total",
    "Optimistic concurrency conflicts retried by the writer",
    ["service", "source"],
)
terminal_anomalies_total = Counter(
    "terminal_anomalies_total",
    "Events that targeted an order already in a terminal state",
    ["service", "source"],
)
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook deliveries by handling result",
    ["service", "result"],
)
webhook_queue_depth = Gauge(
    "webhook_queue_depth",
    "Webhook envelopes waiting in the queue",
    ["service"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Payment gateway calls by operation and result",
    ["service", "operation", "result"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Payment gateway call latency seconds",
    ["service", "operation"],
)
poller_runs_total = Counter("poller_runs_total", "Completed payment status sweeps", ["service"])
poller_orders_total = Counter(
    "poller_orders_total",
    "Orders visited by the payment status sweep",
    ["service", "result"],
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
