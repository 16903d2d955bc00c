"""
Exceptions raised by the job queue.
"""


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class StoreUnavailable(JobQueueError):
    """The Redis store could not be reached or did not answer in time."""


class JobNotFoundError(JobQueueError):
    """The job does not exist, or is no longer in the collection an operation expected."""

    def __init__(self, job_id: int | None, message: str | None = None):
        self.job_id = job_id
        super().__init__(message or f"job {job_id} not found")


class InvalidTransition(JobQueueError):
    """The job's current state does not allow the requested transition."""

    def __init__(self, job_id: int | None, operation: str, state: str | None = None):
        self.job_id = job_id
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} job {job_id} in state {state!r}")


class HandlerFailure(JobQueueError):
    """A job handler reported an error or raised."""


class MalformedMessage(JobQueueError):
    """An event envelope could not be decoded."""


class CorruptJob(JobQueueError):
    """A stored job hash could not be decoded into a job record."""

    def __init__(self, job_id: int, reason: str):
        self.job_id = job_id
        super().__init__(f"job {job_id} has an unreadable record: {reason}")
