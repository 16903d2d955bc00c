"""
Type definitions for the job queue.
Contains input/output type definitions shared across modules.
"""

from jobqueue.types.events import EventEnvelope
from jobqueue.types.job import JobContext, JobRecord, JobResult

__all__ = [
    # Job types
    "JobRecord",
    "JobResult",
    "JobContext",
    # Event types
    "EventEnvelope",
]
