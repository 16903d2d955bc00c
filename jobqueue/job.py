"""
Job entity and its state machine operations.

The canonical state of a job lives in the store; a Job instance is an
advisory local copy, refreshed by its own operations, by the event relay
and by refresh().
"""

import json
import logging
from typing import TYPE_CHECKING, Any

from jobqueue.constants import (
    DEFAULT_PRIORITY,
    NON_TERMINAL_STATES,
    PRIORITIES,
    PRIORITY_SCORE_FACTOR,
    JobEventName,
    JobState,
)
from jobqueue.emitter import Listener, Observable
from jobqueue.exceptions import InvalidTransition
from jobqueue.observability.metrics import get_metrics
from jobqueue.store.repository import now_ms
from jobqueue.types.job import JobRecord

if TYPE_CHECKING:
    from jobqueue.queue import Queue
    from jobqueue.store.repository import JobRepository

logger = logging.getLogger(__name__)


def resolve_priority(value: int | str) -> int:
    """Map a priority name or integer to its numeric value."""
    if isinstance(value, str):
        try:
            return PRIORITIES[value.lower()]
        except KeyError:
            raise ValueError(f"unknown priority {value!r}") from None
    return int(value)


class Job:
    """
    A typed unit of work with a payload.

    Lower priority values are processed first; ties are broken by id.
    """

    def __init__(
        self,
        queue: "Queue",
        job_type: str,
        data: Any = None,
        repository: "JobRepository | None" = None,
    ):
        self.queue = queue
        self._repository = repository
        self.type = job_type
        self.data = {} if data is None else data

        self.id: int | None = None
        self.state: JobState | None = None
        self.priority = DEFAULT_PRIORITY
        self.max_attempts = queue.settings.default_max_attempts
        self.attempts_remaining = self.max_attempts
        self.progress_pct = 0
        self.delay_ms = 0
        self.backoff_ms = 0
        self.backoff_exponential = False
        self.created_at: int | None = None
        self.updated_at: int | None = None
        self.duration: int | None = None
        self.error: str | None = None

        self._emitter = Observable()

    def __repr__(self) -> str:
        return f"<Job id={self.id} type={self.type!r} state={self.state}>"

    # ------------------------------------------------------------------
    # Builders (before save)
    # ------------------------------------------------------------------

    def set_priority(self, value: int | str) -> "Job":
        """Set the priority from a name (see PRIORITIES) or an integer."""
        self.priority = resolve_priority(value)
        return self

    def set_attempts(self, n: int) -> "Job":
        """Allow up to `n` attempts in total."""
        if n < 1:
            raise ValueError("attempts must be >= 1")
        self.max_attempts = n
        self.attempts_remaining = n
        return self

    def set_delay(self, ms: int) -> "Job":
        """Hold the job in the delayed set for `ms` after creation."""
        self.delay_ms = max(0, int(ms))
        return self

    def set_backoff(self, ms: int, exponential: bool = False) -> "Job":
        """Delay retries by `ms` (doubling per attempt when exponential)."""
        self.backoff_ms = max(0, int(ms))
        self.backoff_exponential = exponential
        return self

    # ------------------------------------------------------------------
    # Observable
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> Listener:
        return self._emitter.on(event, listener)

    def once(self, event: str, listener: Listener) -> Listener:
        return self._emitter.once(event, listener)

    def off(self, event: str, listener: Listener | None = None) -> None:
        self._emitter.off(event, listener)

    def emit(self, event: str, *args: Any) -> bool:
        """Deliver a relayed event to this handle, updating the local copy first."""
        self._apply_event(event, *args)
        return self._emitter.emit(event, *args)

    def _apply_event(self, event: str, *args: Any) -> None:
        if event == JobEventName.PROGRESS and args:
            self.progress_pct = int(args[0])
        elif event == JobEventName.START:
            self.state = JobState.ACTIVE
        elif event == JobEventName.COMPLETE:
            self.state = JobState.COMPLETE
            if args:
                self.duration = int(args[0])
        elif event == JobEventName.FAILED:
            self.state = JobState.FAILED
            if args:
                self.error = args[0]
        elif event == JobEventName.PROMOTION:
            self.state = JobState.INACTIVE
        elif event == JobEventName.DELAY:
            self.state = JobState.DELAYED
        elif event == JobEventName.REMOVE:
            self.state = None

    # ------------------------------------------------------------------
    # Store-backed operations
    # ------------------------------------------------------------------

    @property
    def _repo(self) -> "JobRepository":
        return self._repository or self.queue.repository

    @property
    def due_at(self) -> int | None:
        """Epoch ms at which a delayed job becomes runnable."""
        if self.created_at is None:
            return None
        return self.created_at + self.delay_ms

    @property
    def attempts_made(self) -> int:
        return self.max_attempts - self.attempts_remaining

    def _require_id(self, operation: str) -> int:
        if self.id is None:
            raise InvalidTransition(None, operation, None)
        return self.id

    def _fields(self) -> dict[str, Any]:
        return {
            "data": json.dumps(self.data),
            "priority": self.priority,
            "max_attempts": self.max_attempts,
            "backoff": self.backoff_ms,
            "backoff_exponential": self.backoff_exponential,
        }

    async def save(self) -> "Job":
        """
        Persist the job.

        The first save assigns the id, writes the hash and enters the job
        into DELAYED (scored by due time) when it has a delay, else INACTIVE
        (scored by priority then id). Later saves update data, priority and
        attempts in place.
        """
        if self.id is not None:
            self.state = await self._repo.update(self.id, self._fields(), JobEventName.UPDATE)
            return self

        self.id = await self._repo.next_id()
        if self.id >= PRIORITY_SCORE_FACTOR:
            raise OverflowError(f"job id {self.id} exceeds the inactive score range")

        now = now_ms()
        self.created_at = now
        self.updated_at = now
        self.attempts_remaining = self.max_attempts

        if self.delay_ms > 0:
            state, score = JobState.DELAYED, now + self.delay_ms
        else:
            state, score = JobState.INACTIVE, self.priority * PRIORITY_SCORE_FACTOR + self.id

        # Track before publishing so this handle sees its own enqueue event
        await self.queue.events.track(self)

        fields = self._fields()
        fields.update(
            {
                "progress": 0,
                "attempts_remaining": self.attempts_remaining,
                "created_at": now,
                "updated_at": now,
                "delay": self.delay_ms,
            }
        )
        try:
            await self._repo.insert(
                self.id, self.type, state, score, fields, JobEventName.ENQUEUE, self.type
            )
        except Exception:
            self.queue.events.untrack(self.id)
            self.id = None
            raise
        self.state = state
        get_metrics().record_job_enqueued(self.type)
        return self

    async def claim(self) -> "Job":
        """
        Atomically move the job from INACTIVE to ACTIVE and load its fields
        as the claim wrote them.

        Raises:
            JobNotFoundError: The job is gone or no longer inactive, i.e.
                another worker claimed it first.
            CorruptJob: The job was claimed but its hash is unreadable.
        """
        job_id = self._require_id("claim")
        self._load(await self._repo.claim(job_id, JobEventName.START))
        return self

    async def complete(self, duration_ms: int) -> "Job":
        """Move an ACTIVE job to COMPLETE, recording its handler duration."""
        job_id = self._require_id("complete")
        now = now_ms()
        await self._repo.transition(
            job_id,
            JobState.COMPLETE,
            allowed={JobState.ACTIVE},
            score=now,
            fields={"duration": int(duration_ms)},
            event=JobEventName.COMPLETE,
            event_args=(int(duration_ms),),
            operation="complete",
        )
        self.state = JobState.COMPLETE
        self.duration = int(duration_ms)
        self.updated_at = now
        return self

    async def fail(self, error: str | BaseException) -> JobState:
        """
        Record a failed attempt of an ACTIVE job.

        While attempts remain the job re-enters INACTIVE (or DELAYED under a
        backoff) and "failed attempt" is published with the error. The last
        attempt moves it to FAILED and publishes "failed" instead.

        Returns:
            INACTIVE or DELAYED while attempts remain, else FAILED.
        """
        job_id = self._require_id("fail")
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        self.state = await self._repo.fail(
            job_id, message, JobEventName.FAILED_ATTEMPT, JobEventName.FAILED
        )
        self.attempts_remaining = max(0, self.attempts_remaining - 1)
        self.error = message
        return self.state

    async def delay(self, ms: int) -> "Job":
        """Move a non-terminal job to DELAYED, due `ms` from now."""
        job_id = self._require_id("delay")
        if self.created_at is None:
            await self.refresh()
        due = now_ms() + max(0, int(ms))
        delay_ms = due - self.created_at
        await self._repo.transition(
            job_id,
            JobState.DELAYED,
            allowed=NON_TERMINAL_STATES,
            score=due,
            fields={"delay": delay_ms},
            event=JobEventName.DELAY,
            event_args=(due,),
            operation="delay",
        )
        self.state = JobState.DELAYED
        self.delay_ms = delay_ms
        return self

    async def promote(self, now: int | None = None) -> "Job":
        """
        Move a due DELAYED job to INACTIVE.

        Raises:
            InvalidTransition: The job is no longer delayed, or not yet due.
        """
        job_id = self._require_id("promote")
        await self._repo.transition(
            job_id,
            JobState.INACTIVE,
            allowed={JobState.DELAYED},
            due_before=now_ms() if now is None else now,
            event=JobEventName.PROMOTION,
            operation="promote",
        )
        self.state = JobState.INACTIVE
        return self

    async def progress(self, completed: int, total: int = 100) -> int:
        """
        Report progress of an ACTIVE job; never changes its state.

        Returns:
            The stored percentage, clamped to [0, 100].
        """
        job_id = self._require_id("progress")
        pct = int(completed * 100 / total) if total else 0
        pct = max(0, min(100, pct))
        await self._repo.progress(job_id, pct, JobEventName.PROGRESS)
        self.progress_pct = pct
        return pct

    async def remove(self) -> None:
        """
        Delete the job from the store.

        Raises:
            JobNotFoundError: The job no longer exists.
        """
        job_id = self._require_id("remove")
        await self._repo.remove(job_id, JobEventName.REMOVE)
        self.state = None

    async def refresh(self) -> "Job":
        """Reload the local copy from the store."""
        record = await self._repo.get(self._require_id("refresh"))
        self._load(record)
        return self

    def _load(self, record: JobRecord) -> None:
        self.id = record.id
        self.type = record.type
        self.data = record.data
        self.priority = record.priority
        self.progress_pct = record.progress
        self.state = record.state
        self.attempts_remaining = record.attempts_remaining
        self.max_attempts = record.max_attempts
        self.created_at = record.created_at
        self.updated_at = record.updated_at
        self.delay_ms = record.delay
        self.duration = record.duration
        self.error = record.error
        self.backoff_ms = record.backoff
        self.backoff_exponential = record.backoff_exponential

    @classmethod
    async def get(
        cls,
        queue: "Queue",
        job_id: int,
        repository: "JobRepository | None" = None,
    ) -> "Job":
        """
        Fetch a job by id.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        repository = repository or queue.repository
        record = await repository.get(int(job_id))
        job = cls(queue, record.type, repository=repository)
        job._load(record)
        return job

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "priority": self.priority,
            "progress": self.progress_pct,
            "state": self.state.value if self.state else None,
            "attempts_remaining": self.attempts_remaining,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "delay": self.delay_ms,
            "duration": self.duration,
            "error": self.error,
        }
