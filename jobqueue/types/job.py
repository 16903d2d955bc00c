"""
Job-related type definitions.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from jobqueue.constants import JobState

if TYPE_CHECKING:
    from jobqueue.job import Job


class JobRecord(BaseModel):
    """
    Decoded contents of a `<prefix>:job:<id>` hash.

    All hash fields are stored as strings; pydantic coerces them back.
    """

    id: int
    type: str
    data: Any = None
    priority: int = 0
    progress: int = 0
    state: JobState
    attempts_remaining: int = 1
    max_attempts: int = 1
    created_at: int
    updated_at: int
    delay: int = 0
    duration: int | None = None
    error: str | None = None
    backoff: int = 0
    backoff_exponential: bool = False


class JobResult(BaseModel):
    """
    Result of job execution.
    Optionally returned by job handlers; returning None means success.
    """

    success: bool = True
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Carries the attempt bookkeeping and the progress reporter.
    """

    job: "Job"
    attempt: int
    max_attempts: int
    report_progress: Callable[[int, int], Awaitable[None]]

    async def progress(self, completed: int, total: int = 100) -> None:
        """Report progress as `completed` out of `total`."""
        await self.report_progress(completed, total)

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
