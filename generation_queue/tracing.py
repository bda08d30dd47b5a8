import logging
import os
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.trace.sampling import ALWAYS_ON

logger = logging.getLogger(__name__)


def setup_tracing(app):
    service_name = os.getenv("OTEL_SERVICE_NAME", "generation-queue")

    resource = Resource(
        attributes = {
            SERVICE_NAME: service_name
        }
    )

    provider = TracerProvider(resource=resource, sampler=ALWAYS_ON)

    trace.set_tracer_provider(provider)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")

    otlp_exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)

    # The worker thread emits a span per request; batching keeps export off its path.
    span_processor = BatchSpanProcessor(otlp_exporter)
    trace.get_tracer_provider().add_span_processor(span_processor)

    # Adds otelTraceID / otelSpanID / otelServiceName to every log record.
    LoggingInstrumentor().instrument(set_logging_format=False)

    logger.info(
        "Tracing is configured",
        extra={"service_name": service_name, "otlp_endpoint": otlp_endpoint},
    )

    FastAPIInstrumentor.instrument_app(app)
