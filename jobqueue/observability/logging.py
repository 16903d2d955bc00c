"""
Structured logging for queue processes.

Library modules log through `logging.getLogger(__name__)` with `extra=`
fields; setup_logging() renders those records and structlog's own through
one structlog formatter. Worker loops bind the job they are running with
job_log_context(), so every record emitted while a handler runs carries the
job id, type and worker.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO, TYPE_CHECKING, Any

import structlog
from opentelemetry import trace

from jobqueue.config import get_settings

if TYPE_CHECKING:
    from jobqueue.job import Job

# Libraries that are chatty below WARNING
_QUIET_LOGGERS = ("redis", "opentelemetry")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach trace_id and span_id of the current span, if one is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def setup_logging(
    log_level: str | None = None,
    log_format: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """
    Route structlog and standard library logging through one renderer.

    Args:
        log_level: Overrides settings.log_level.
        log_format: Overrides settings.log_format ("json" or "console").
        stream: Output stream, stdout by default.
    """
    settings = get_settings()
    level = logging.getLevelName((log_level or settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format or settings.log_format),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def job_log_context(job: "Job", worker_id: str | None = None) -> Iterator[None]:
    """
    Bind the job being processed to every log record in this task.

    Context variables are copied per asyncio task, so concurrent worker
    loops do not see each other's jobs.
    """
    fields: dict[str, Any] = {"job_id": job.id, "job_type": job.type}
    if worker_id is not None:
        fields["worker_id"] = worker_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield
