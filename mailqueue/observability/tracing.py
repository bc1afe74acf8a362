"""
OpenTelemetry tracing for the queue loops.

Spans are no-ops until `setup_tracing()` installs an exporting provider.
"""

import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Tracer

from mailqueue import __version__
from mailqueue.config import get_settings

logger = logging.getLogger(__name__)


def setup_tracing() -> None:
    """Install a tracer provider that exports spans over OTLP/gRPC."""
    settings = get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {SERVICE_NAME: settings.otel_service_name, SERVICE_VERSION: __version__}
        )
    )

    try:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    except Exception as e:
        logger.warning(f"OTLP exporter unavailable, spans not exported: {e}")

    trace.set_tracer_provider(provider)


def get_tracer() -> Tracer:
    """Tracer for queue spans, bound to whichever provider is installed."""
    return trace.get_tracer("mailqueue", __version__)
