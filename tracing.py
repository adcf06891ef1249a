"""OpenTelemetry spans around the entry point and each pipeline stage.

Spans go nowhere until ``init_tracing`` is given an OTLP endpoint; until then
the API's default no-op tracer provider is in effect.
"""

from __future__ import annotations

import functools
import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "rife-interpolator"
ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

_configured = False


def init_tracing(endpoint: Optional[str] = None) -> bool:
    """Configure span export to ``endpoint`` (or the standard env var).

    Returns True when an exporter was installed by this call.
    """
    global _configured
    if _configured:
        return False

    endpoint = endpoint or os.environ.get(ENDPOINT_ENV)
    if not endpoint:
        return False

    traces_endpoint = endpoint.rstrip("/")
    if not traces_endpoint.endswith("/v1/traces"):
        traces_endpoint += "/v1/traces"

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint)))
    trace.set_tracer_provider(provider)
    _configured = True
    return True


def traced(func):
    """Run ``func`` inside a span named after it."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper
