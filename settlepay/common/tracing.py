"""OpenTelemetry setup helpers used by each FastAPI service."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from settlepay.common.config import settings

tracer = trace.get_tracer("settlepay")


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting over OTLP HTTP, unless tracing is disabled."""

    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name, "service.namespace": "settlepay"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


@contextmanager
def gateway_span(operation: str, **attributes):
    """Client span around one payout gateway call.

    Without a registered provider this is the no-op tracer, so callers need
    no tracing checks of their own.
    """

    with tracer.start_as_current_span(f"gateway.{operation}", kind=trace.SpanKind.CLIENT) as span:
        span.set_attribute("payout.gateway.operation", operation)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"payout.{key}", value)
        yield span
