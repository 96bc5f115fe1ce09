"""Tracing setup for calsync.

Spans are exported over OTLP/gRPC only when ``OTEL_EXPORTER_OTLP_ENDPOINT``
is set; otherwise the OTel API hands out no-op spans and tracing costs nothing.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

OTLP_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"
_TRACER_NAME = "calsync"

# The global TracerProvider can only be set once per process.
_tracer_provider_installed: bool = False


def otlp_endpoint() -> str | None:
    return os.environ.get(OTLP_ENDPOINT_ENV) or None


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an exporting TracerProvider for ``service_name`` when OTLP is configured."""
    global _tracer_provider_installed

    endpoint = otlp_endpoint()
    if endpoint is None:
        logger.info("%s not set; spans will not be exported", OTLP_ENDPOINT_ENV)
    elif not _tracer_provider_installed:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _tracer_provider_installed = True
        logger.info("Exporting spans for %s to %s", service_name, endpoint)
    return get_tracer()


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


def tag_connection_span(span: trace.Span, *, connection_id: str, provider: str) -> None:
    span.set_attribute("calsync.connection_id", connection_id)
    span.set_attribute("calsync.provider", provider)
