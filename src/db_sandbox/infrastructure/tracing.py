"""OpenTelemetry tracing configuration.

Spans are emitted through whatever provider is active; without
``setup_tracing`` the OpenTelemetry API hands out no-op spans, so
tracing costs nothing unless an endpoint is configured.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.trace import Status, StatusCode

from db_sandbox.domain.errors import SandboxError

_TRACER_NAME = "db_sandbox"


def setup_tracing(
    service_name: str = _TRACER_NAME,
    otlp_endpoint: str | None = None,
    console_export: bool = False,
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Set up OpenTelemetry tracing.

    Args:
        service_name: ``service.name`` resource attribute.
        otlp_endpoint: OTLP gRPC collector endpoint.
        console_export: Also print spans to stdout.
        exporter: Extra exporter (e.g. in-memory for tests).

    Returns:
        The installed tracer provider.
    """
    from db_sandbox import __version__

    resource = Resource.create({"service.name": service_name, "service.version": __version__})
    provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    return provider


def get_tracer() -> trace.Tracer:
    """Get a tracer from the active provider."""
    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def trace_span(
    name: str,
    attributes: dict[str, Any] | None = None,
    tracer: trace.Tracer | None = None,
) -> Generator[trace.Span, None, None]:
    """Run a block inside a span.

    Any exception marks the span as failed and still propagates. Sandbox
    errors also record their class under ``sandbox.error``.
    """
    tracer = tracer or get_tracer()
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            if isinstance(e, SandboxError):
                span.set_attribute("sandbox.error", type(e).__name__)
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
