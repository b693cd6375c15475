from __future__ import annotations

import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

TRACER_NAME = "llm-router"


def tracing_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "false").lower() == "true"


def setup_tracing(app: FastAPI) -> bool:
    if not tracing_enabled():
        return False

    service_name = os.getenv("OTEL_SERVICE_NAME", "llm-router")
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4318")

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
    HTTPXClientInstrumentor().instrument()
    return True


def get_tracer() -> trace.Tracer:
    """No-op tracer unless `setup_tracing` installed a provider."""
    return trace.get_tracer(TRACER_NAME)
