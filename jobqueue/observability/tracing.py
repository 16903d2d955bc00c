"""
OpenTelemetry tracing.

Nothing is exported until a process calls setup_tracing(); before that the
spans below go to the default no-op provider, so importing the queue as a
library never opens exporter connections.
"""

from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from jobqueue.config import get_settings
from jobqueue.constants import SPAN_PROCESS_JOB

if TYPE_CHECKING:
    from jobqueue.job import Job

_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Install a tracer provider exporting over OTLP to the configured endpoint.

    Args:
        enable_console_export: Also print finished spans to stdout.

    Returns:
        The tracer used by workers and the promoter.
    """
    global _tracer

    settings = get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.otel_service_name, "service.version": "0.6.5"}
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        )
    )
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name)
    return _tracer


def instrument_redis() -> None:
    """Trace every redis-py command, Lua scripts included."""
    RedisInstrumentor().instrument()


def get_tracer() -> Tracer:
    if _tracer is None:
        return trace.get_tracer(get_settings().otel_service_name)
    return _tracer


def create_span(name: str, **attributes: Any) -> Any:
    """
    Start a span as the current one; None attributes are left out.

    Returns:
        A context manager yielding the span.
    """
    return get_tracer().start_as_current_span(
        name,
        attributes={k: str(v) for k, v in attributes.items() if v is not None},
    )


def job_span(job: "Job", attempt: int) -> Any:
    """Span around one handler run of `job`."""
    return create_span(SPAN_PROCESS_JOB, job_id=job.id, job_type=job.type, attempt=attempt)


def record_outcome(span: Span, state: str, error: str | None = None) -> None:
    """Tag a job span with the state the attempt left the job in."""
    span.set_attribute("job.state", state)
    if error:
        span.set_status(trace.Status(trace.StatusCode.ERROR, error))
