"""Prometheus metric definitions for the order pipeline."""

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
order_transitions_total = Counter(
    "order_transitions_total",
    "Applied order status transitions",
    ["service", "from_status", "to_status"],
)
payment_events_total = Counter(
    "payment_events_total",
    "Payment webhook events handled",
    ["service", "event_type", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbound events skipped",
    ["service", "source"],
)
dispatch_attempts_total = Counter(
    "dispatch_attempts_total",
    "Outbound dispatch attempts to the generation worker",
    ["service", "outcome"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
callback_rejections_total = Counter(
    "callback_rejections_total",
    "Generation callbacks rejected before business logic",
    ["service", "reason"],
)
generation_runs_total = Counter(
    "generation_runs_total",
    "Generation pipeline runs by outcome",
    ["service", "outcome"],
)
generation_step_seconds = Histogram(
    "generation_step_seconds",
    "Duration of each generation pipeline step",
    ["service", "step"],
)
replay_nonce_cache_size = Gauge(
    "replay_nonce_cache_size",
    "Nonces currently held by the callback replay cache",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
