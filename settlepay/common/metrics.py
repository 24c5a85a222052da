"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payouts_generated_total = Counter("payouts_generated_total", "Weekly payout ledgers created", ["service"])
payouts_completed_total = Counter("payouts_completed_total", "Payout ledgers reaching completed", ["service"])
payouts_failed_total = Counter(
    "payouts_failed_total",
    "Payout ledgers reaching failed",
    ["service", "error_kind"],
)
payouts_cancelled_total = Counter("payouts_cancelled_total", "Payout ledgers cancelled by admin", ["service"])
gateway_call_seconds = Histogram(
    "gateway_call_seconds",
    "Payout gateway call duration seconds",
    ["service", "operation", "outcome"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Payout webhooks received by outcome",
    ["service", "event", "outcome"],
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
payout_e2e_seconds = Histogram(
    "payout_e2e_seconds",
    "Payout duration seconds from ledger creation to terminal state",
    ["service", "terminal_state"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
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
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
