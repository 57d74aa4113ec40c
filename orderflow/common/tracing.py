"""OpenTelemetry setup helpers and trace-id lookup for outgoing events."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from orderflow.common.config import CommonSettings, settings
from orderflow.common.logging import trace_id_ctx


def setup_tracing(config: CommonSettings = settings) -> None:
    """Register a tracer provider exporting order spans over OTLP HTTP."""

    resource = Resource.create(
        {"service.name": config.service_name, "service.namespace": "orderflow"}
    )
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=config.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app)


def current_trace_ids() -> tuple[str, str]:
    """Return `(trace_id, span_id)` of the active span as hex strings.

    Without a recording span the request correlation id stands in for the
    trace id and the span id is empty.
    """

    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        return format(ctx.trace_id, "032x"), format(ctx.span_id, "016x")
    return trace_id_ctx.get(), ""
