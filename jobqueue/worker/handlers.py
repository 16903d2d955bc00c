"""
Job handler registry and invocation.

Handlers receive the claimed job and a JobContext. Returning None or a
successful JobResult completes the job; returning a failed JobResult or
raising fails the attempt. HandlerFailure marks an expected failure and is
logged without a traceback. Handlers must tolerate being run more than once
for the same job: enqueueing is at-least-once.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from jobqueue.exceptions import HandlerFailure
from jobqueue.types.job import JobContext, JobResult

if TYPE_CHECKING:
    from jobqueue.job import Job

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[["Job", JobContext], Awaitable[JobResult | None] | JobResult | None]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("email")
        async def send_email(job: Job, context: JobContext) -> None:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")
        return handler
    return decorator


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


def unregister_handler(job_type: str) -> None:
    _handlers.pop(job_type, None)


def _as_result(value: Any) -> JobResult:
    if value is None:
        return JobResult(success=True)
    if isinstance(value, JobResult):
        return value
    if isinstance(value, dict):
        return JobResult(success=True, output=value)
    return JobResult(success=True, output={"result": value})


async def execute_handler(handler: JobHandler, job: "Job", context: JobContext) -> JobResult:
    """
    Run a handler, converting anything it raises into a failed result.

    Args:
        handler: The handler to run.
        job: The claimed job.
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    try:
        value = handler(job, context)
        if inspect.isawaitable(value):
            value = await value
    except HandlerFailure as e:
        logger.warning(
            "Handler reported failure",
            extra={"job_id": job.id, "job_type": job.type, "error": str(e)}
        )
        return JobResult(success=False, error=str(e) or "Handler reported failure")
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": job.id, "job_type": job.type, "error": str(e)}
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {type(e).__name__}: {e}",
        )

    result = _as_result(value)
    if not result.success and not result.error:
        result.error = "Handler reported failure"
    return result
