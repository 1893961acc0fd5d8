"""Optional OpenTelemetry spans around pipeline stages."""

from __future__ import annotations

import contextlib
import functools
import os
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "enlarge"
DEFAULT_ENDPOINT = "http://localhost:4318/v1/traces"
ENDPOINT_ENV = "ENLARGE_OTLP_ENDPOINT"

tracer: Optional[trace.Tracer] = None


def tracing_requested() -> bool:
    return bool(os.environ.get(ENDPOINT_ENV))


def init_tracing(endpoint: Optional[str] = None) -> None:
    """Configure a tracer that exports spans to an OTLP HTTP endpoint."""
    global tracer
    if tracer is not None:
        return

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(
        endpoint=endpoint or os.environ.get(ENDPOINT_ENV) or DEFAULT_ENDPOINT
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


@contextlib.contextmanager
def span(name: str, **attributes: object) -> Iterator[None]:
    """Run a block inside a span when tracing is enabled."""
    if tracer is None:
        yield
        return
    with tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            current.set_attribute(key, str(value))
        yield


def traced(func):
    """Decorator that wraps a function call in a tracing span if tracing is enabled."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with span(func.__name__):
            return func(*args, **kwargs)

    return wrapper
