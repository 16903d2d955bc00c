"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobqueue.observability.logging import get_logger, job_log_context, setup_logging
from jobqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobqueue.observability.tracing import (
    create_span,
    get_tracer,
    instrument_redis,
    setup_tracing,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "job_log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "instrument_redis",
    "get_tracer",
    "create_span",
]
