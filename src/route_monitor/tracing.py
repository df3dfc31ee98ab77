"""OpenTelemetry tracing for probes and collections.

Spans are only exported when ``TRACING_ENABLED`` is set; the OTLP endpoint
comes from the standard ``OTEL_EXPORTER_OTLP_*`` variables.
"""

from __future__ import annotations

import os

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from . import __version__
from .config import TracingSettings
from .descriptors import NAMESPACE

logger = structlog.get_logger(__name__)


def build_tracer_provider(
    settings: TracingSettings, exporter: SpanExporter | None = None
) -> TracerProvider:
    """Provider tagging every span with the exporter's identity."""
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.namespace": NAMESPACE,
            "service.version": __version__,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter or OTLPSpanExporter()))
    return provider


def setup_tracing(settings: TracingSettings) -> bool:
    """Install a global tracer provider exporting over OTLP/HTTP.

    Returns:
        True if tracing was configured, False otherwise.
    """
    if not settings.enabled:
        logger.info("tracing_disabled")
        return False

    exporter_name = os.getenv("OTEL_TRACES_EXPORTER", "otlp").lower()
    if exporter_name in {"none", ""}:
        logger.info("tracing_exporter_disabled")
        return False

    trace.set_tracer_provider(build_tracer_provider(settings))
    logger.info(
        "tracing_configured",
        exporter=exporter_name,
        service_name=settings.service_name,
        version=__version__,
    )
    return True


def shutdown_tracing() -> None:
    """Flush pending spans if an SDK provider is installed."""
    provider = trace.get_tracer_provider()
    if isinstance(provider, TracerProvider):
        provider.shutdown()
