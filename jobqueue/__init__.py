"""
Redis Job Queue

A priority-ordered distributed job queue over Redis with atomic state
transitions, delayed-job promotion, concurrent workers and a cross-process
event relay.
"""

from jobqueue.exceptions import (
    HandlerFailure,
    InvalidTransition,
    JobNotFoundError,
    JobQueueError,
    MalformedMessage,
    StoreUnavailable,
)
from jobqueue.job import Job
from jobqueue.queue import Queue, create_queue
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.handlers import register_handler

__version__ = "0.6.5"

__all__ = [
    "create_queue",
    "Queue",
    "Job",
    "JobContext",
    "JobResult",
    "register_handler",
    "JobQueueError",
    "StoreUnavailable",
    "JobNotFoundError",
    "InvalidTransition",
    "HandlerFailure",
    "MalformedMessage",
]
