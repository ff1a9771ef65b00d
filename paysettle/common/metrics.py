"""Prometheus metric definitions shared by the gateway and workers."""

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
payment_requests_total = Counter("payment_requests_total", "Total payment creation requests", ["service"])
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Payment requests answered from a stored idempotent response",
    ["service"],
)
payment_settlements_total = Counter(
    "payment_settlements_total",
    "Settled payments by outcome",
    ["service", "method", "outcome"],
)
payment_settlement_seconds = Histogram(
    "payment_settlement_seconds",
    "Payment duration seconds from creation to settlement",
    ["service", "outcome"],
)
refunds_processed_total = Counter("refunds_processed_total", "Processed refunds", ["service"])
webhook_attempts_total = Counter(
    "webhook_attempts_total",
    "Webhook delivery attempts by outcome",
    ["service", "event", "outcome"],
)
webhook_retries_scheduled_total = Counter(
    "webhook_retries_scheduled_total",
    "Webhook deliveries re-enqueued with backoff",
    ["service"],
)
duplicate_jobs_skipped_total = Counter(
    "duplicate_jobs_skipped_total",
    "Redelivered jobs skipped because the entity already left its initial state",
    ["service", "topic"],
)
jobs_processed_total = Counter(
    "jobs_processed_total",
    "Jobs handled by workers",
    ["service", "topic", "result"],
)
job_queue_delay_seconds = Histogram(
    "job_queue_delay_seconds",
    "Seconds between a job becoming available and being claimed",
    ["service", "topic"],
)
queue_depth = Gauge(
    "queue_depth",
    "Current job count per topic and state",
    ["topic", "state"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
