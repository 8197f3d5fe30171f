"""OpenTelemetry wiring for the API and the reconciliation writer.

Export is opt-in (`OTEL_ENABLED`). Without it the global tracer is the no-op
one, so `reconcile_span` costs nothing and trace ids fall back to the
correlation header or a fresh uuid.
"""

from contextlib import contextmanager
from typing import Iterator
from uuid import uuid4

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from docpay.common.config import settings


tracer = trace.get_tracer("docpay.reconciliation")


def setup_tracing(service_name: str) -> None:
    if not settings.otel_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def current_trace_id(fallback: str | None = None) -> str:
    """Hex id of the active span's trace, else `fallback`, else a new uuid."""

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return format(span_context.trace_id, "032x")
    return fallback or str(uuid4())


@contextmanager
def reconcile_span(source: str, ref: str, provider_status: str | None) -> Iterator[trace.Span]:
    """Span around one reconcile call; the outcome is attached by the caller."""

    with tracer.start_as_current_span("reconcile") as span:
        span.set_attribute("docpay.source", str(source))
        span.set_attribute("docpay.order_ref", ref)
        span.set_attribute("docpay.provider_status", str(provider_status))
        yield span
