"""OpenTelemetry wiring for the gateway and worker apps."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from paysettle.common.config import settings


def setup_tracing(service_name: str, endpoint: str | None = None) -> TracerProvider:
    """Register a tracer provider; spans are exported only when an OTLP endpoint is set."""

    endpoint = settings.otel_exporter_otlp_endpoint if endpoint is None else endpoint
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: FastAPI) -> None:
    # Probe and scrape endpoints would drown out real request spans.
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
