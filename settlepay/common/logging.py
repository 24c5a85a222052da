"""Structured JSON logging with request/event/ledger context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

from settlepay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
ledger_id_ctx: ContextVar[str] = ContextVar("ledger_id", default="")

_CONTEXT_VARS = {"trace_id": trace_id_ctx, "event_id": event_id_ctx, "ledger_id": ledger_id_ctx}


class ContextFilter(logging.Filter):
    """Inject service, correlation ids and the active span id into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _CONTEXT_VARS.items():
            setattr(record, name, var.get())
        span_context = trace.get_current_span().get_span_context()
        record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else ""
        return True


@contextmanager
def bind_log_context(**values: str):
    """Bind correlation ids (`trace_id`, `event_id`, `ledger_id`) for a block."""

    tokens = [(_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(value)) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(span_id)s %(event_id)s %(ledger_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    # httpx logs every request line at INFO; gateway calls are already logged here.
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger("settlepay")
