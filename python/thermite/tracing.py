import os

from opentelemetry import trace

from thermite.logging_utils import get_logger

logger = get_logger(__name__)


def setup_tracing(service_name: str = "thermite") -> bool:
    """
    Sets up OpenTelemetry tracing when an OTLP endpoint is configured.

    Without OTEL_EXPORTER_OTLP_ENDPOINT the API's no-op tracer stays in place.
    """
    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not otlp_endpoint:
        return False

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.semconv.resource import ResourceAttributes

    resource = Resource(attributes={ResourceAttributes.SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    trace.set_tracer_provider(provider)
    logger.info(f"Started OpenTelemetry tracing to {otlp_endpoint}")
    return True


def shutdown_tracing() -> None:
    """Flush pending spans if an SDK provider was installed."""
    provider = trace.get_tracer_provider()
    shutdown = getattr(provider, "shutdown", None)
    if shutdown is not None:
        shutdown()


def get_tracer(name: str):
    """Returns a tracer instance for manual instrumentation."""
    return trace.get_tracer(name)
