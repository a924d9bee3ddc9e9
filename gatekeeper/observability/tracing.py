"""
Distributed Tracing with OpenTelemetry.

Spans are exported over OTLP gRPC. FastAPI requests and SQLAlchemy queries
are instrumented automatically; entitlement operations open their own
spans through trace_operation, with attributes under the "entitlement."
prefix.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode
from sqlalchemy.ext.asyncio import AsyncEngine

from gatekeeper.config import settings

TRACER_NAME = "gatekeeper.entitlements"
ATTRIBUTE_PREFIX = "entitlement."

# Routes not worth a span
EXCLUDED_URLS = "health,metrics"


def setup_tracing() -> None:
    """Install a TracerProvider exporting to the OTLP collector."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {SERVICE_NAME: settings.service_name, SERVICE_VERSION: settings.api_version}
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: FastAPI) -> None:
    """Trace every request except health and metrics scrapes."""
    if not settings.tracing_enabled:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    """Trace queries issued through the async engine."""
    if not settings.tracing_enabled:
        return
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def span_attributes(**attributes: Any) -> dict[str, str | int | float | bool]:
    """
    Convert keyword context into OpenTelemetry attribute values.

    None values are dropped, enums are reduced to their value and anything
    else that is not a primitive is stringified.
    """
    converted: dict[str, str | int | float | bool] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        value = getattr(value, "value", value)
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        converted[f"{ATTRIBUTE_PREFIX}{key}"] = value
    return converted


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a span named after the operation.

    Usage:
        with trace_operation("feature_consume", user_id=user_id) as span:
            span.set_attribute("tokens_used", True)

    Exceptions mark the span as failed and propagate unchanged.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        operation_name,
        attributes=span_attributes(**attributes),
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            span.record_exception(exc)
            raise
