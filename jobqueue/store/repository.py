"""
Job repository for store operations.
Implements the data access patterns and atomic transitions for job management.
"""

import functools
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, ParamSpec, TypeVar

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobqueue.constants import JobState
from jobqueue.exceptions import CorruptJob, InvalidTransition, JobNotFoundError, StoreUnavailable
from jobqueue.store.keys import Keyspace
from jobqueue.store.scripts import Scripts, register_scripts
from jobqueue.types.events import EventEnvelope
from jobqueue.types.job import JobRecord

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

APPLIED = 1
REFUSED = 0
MISSING = -1


def now_ms() -> int:
    """Current wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


def store_call(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Translate redis transport errors into StoreUnavailable."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await func(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailable(str(e)) from e

    return wrapper


def _flatten(fields: Mapping[str, Any]) -> list[str]:
    """Hash fields as a flat [field, value, ...] argument list, skipping None."""
    flat: list[str] = []
    for name, value in fields.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = int(value)
        flat.extend((name, str(value)))
    return flat


def _record(job_id: int, raw: dict[str, Any]) -> JobRecord:
    """Decode a job hash; `data` holds JSON."""
    fields = dict(raw, id=job_id)
    try:
        if "data" in fields:
            fields["data"] = json.loads(fields["data"])
        return JobRecord.model_validate(fields)
    except (ValueError, ValidationError) as e:
        raise CorruptJob(job_id, str(e)) from e


class JobRepository:
    """
    Repository for job store operations.

    Implements atomic operations for:
    - Job insertion with id assignment
    - Claiming (inactive -> active) against concurrent workers
    - Completion, failure with retry/backoff, delay and promotion
    - Removal and state collection queries
    """

    def __init__(self, client: Redis, keys: Keyspace):
        """
        Initialize the repository with a store client.

        Args:
            client: The redis client used for commands.
            keys: Key layout of the queue.
        """
        self._client = client
        self._keys = keys
        self._scripts: Scripts = register_scripts(client)

    @property
    def keys(self) -> Keyspace:
        return self._keys

    def _envelope(self, job_id: int, event: str, *args: Any) -> str:
        return EventEnvelope.build(job_id, event, *args).encode()

    @store_call
    async def next_id(self) -> int:
        """Assign a new job id from the global counter."""
        return int(await self._client.incr(self._keys.ids))

    @store_call
    async def insert(
        self,
        job_id: int,
        job_type: str,
        state: JobState,
        score: int,
        fields: Mapping[str, Any],
        event: str,
        *args: Any,
    ) -> None:
        """
        Write a new job hash and enter it into its first state collection.

        Args:
            job_id: Id assigned by next_id().
            job_type: The job type.
            state: INACTIVE or DELAYED.
            score: Ordering score within the state collection.
            fields: Remaining hash fields.
            event: Event published on success.
        """
        code, current = await self._scripts.save(
            keys=[self._keys.job(job_id), self._keys.types, self._keys.events],
            args=[
                self._keys.prefix,
                job_id,
                job_type,
                state.value,
                score,
                self._envelope(job_id, event, *args),
                *_flatten(fields),
            ],
        )
        if int(code) != APPLIED:
            raise InvalidTransition(job_id, "insert", current)

        logger.info(
            "Saved new job",
            extra={"job_id": job_id, "job_type": job_type, "state": state.value}
        )

    @store_call
    async def update(self, job_id: int, fields: Mapping[str, Any], event: str) -> JobState:
        """Rewrite hash fields of an existing job, re-scoring it when inactive."""
        code, current = await self._scripts.update(
            keys=[self._keys.job(job_id), self._keys.events],
            args=[
                self._keys.prefix,
                job_id,
                self._envelope(job_id, event),
                *_flatten(fields),
            ],
        )
        if int(code) == MISSING:
            raise JobNotFoundError(job_id)
        return JobState(current)

    @store_call
    async def transition(
        self,
        job_id: int,
        to_state: JobState,
        *,
        allowed: frozenset[JobState] | set[JobState] | None = None,
        score: int | None = None,
        due_before: int | None = None,
        fields: Mapping[str, Any] | None = None,
        event: str,
        event_args: tuple[Any, ...] = (),
        operation: str | None = None,
        record_out: dict[str, Any] | None = None,
    ) -> JobState:
        """
        Move a job between state collections atomically.

        Args:
            job_id: The job id.
            to_state: Target state.
            allowed: States the job may currently be in; any state if None.
            score: Score in the target collection; priority score if None.
            due_before: If given, the job's score in its current collection
                must not exceed it (promotion guard).
            fields: Extra hash fields written with the transition.
            event: Event published when the transition applies.
            event_args: Event arguments.
            operation: Name used in errors; defaults to the event.
            record_out: Filled with the job hash as written, when given.

        Returns:
            The state the job left.

        Raises:
            JobNotFoundError: The job does not exist.
            InvalidTransition: The job is not in an allowed state.
        """
        result = await self._scripts.transition(
            keys=[self._keys.job(job_id), self._keys.events],
            args=[
                self._keys.prefix,
                job_id,
                to_state.value,
                "" if score is None else score,
                ",".join(sorted(s.value for s in allowed)) if allowed else "",
                "" if due_before is None else due_before,
                now_ms(),
                self._envelope(job_id, event, *event_args),
                *_flatten(fields or {}),
            ],
        )
        code, current = int(result[0]), result[1]
        if code == MISSING:
            raise JobNotFoundError(job_id)
        if code == REFUSED:
            raise InvalidTransition(job_id, operation or event, current)
        if record_out is not None:
            record_out.update(zip(result[2::2], result[3::2]))
        return JobState(current)

    async def claim(self, job_id: int, event: str) -> JobRecord:
        """
        Move an INACTIVE job to ACTIVE and read it back in the same step.

        Raises:
            JobNotFoundError: The job is gone or no longer inactive.
            CorruptJob: The claim applied but the stored hash is unreadable.
        """
        raw: dict[str, Any] = {}
        try:
            await self.transition(
                job_id,
                JobState.ACTIVE,
                allowed={JobState.INACTIVE},
                fields={"progress": 0},
                event=event,
                operation="claim",
                record_out=raw,
            )
        except InvalidTransition as e:
            raise JobNotFoundError(job_id, f"job {job_id} is no longer inactive") from e
        return _record(job_id, raw)

    @store_call
    async def fail(self, job_id: int, error: str, retry_event: str, failed_event: str) -> JobState:
        """
        Record a failed attempt.

        Decrements attempts_remaining; the job re-enters INACTIVE (or DELAYED
        when a backoff is configured) while attempts remain, else FAILED.

        Returns:
            The state the job entered.
        """
        code, current = await self._scripts.fail(
            keys=[self._keys.job(job_id), self._keys.events],
            args=[
                self._keys.prefix,
                job_id,
                now_ms(),
                error,
                self._envelope(job_id, retry_event, error),
                self._envelope(job_id, failed_event, error),
            ],
        )
        code = int(code)
        if code == MISSING:
            raise JobNotFoundError(job_id)
        if code == REFUSED:
            raise InvalidTransition(job_id, "fail", current)

        new_state = JobState(current)
        if new_state == JobState.FAILED:
            logger.warning(
                "Job failed after exhausting attempts",
                extra={"job_id": job_id, "error": error}
            )
        else:
            logger.info(
                "Job queued for retry",
                extra={"job_id": job_id, "state": new_state.value}
            )
        return new_state

    @store_call
    async def progress(self, job_id: int, pct: int, event: str) -> None:
        """Store progress of an active job without changing its state."""
        code, current = await self._scripts.progress(
            keys=[self._keys.job(job_id), self._keys.events],
            args=[job_id, pct, now_ms(), self._envelope(job_id, event, pct)],
        )
        code = int(code)
        if code == MISSING:
            raise JobNotFoundError(job_id)
        if code == REFUSED:
            raise InvalidTransition(job_id, "progress", current)

    @store_call
    async def remove(self, job_id: int, event: str) -> JobState:
        """
        Delete a job and drop it from its state collections.

        Returns:
            The state the job was in.
        """
        code, current = await self._scripts.remove(
            keys=[self._keys.job(job_id), self._keys.events],
            args=[self._keys.prefix, job_id, self._envelope(job_id, event)],
        )
        if int(code) == MISSING:
            raise JobNotFoundError(job_id)

        logger.info("Removed job", extra={"job_id": job_id, "state": current})
        return JobState(current)

    @store_call
    async def get(self, job_id: int) -> JobRecord:
        """
        Fetch a job record.

        Raises:
            JobNotFoundError: If the hash does not exist.
            CorruptJob: If the hash cannot be decoded.
        """
        raw = await self._client.hgetall(self._keys.job(job_id))
        if not raw:
            raise JobNotFoundError(job_id)
        return _record(job_id, raw)

    @store_call
    async def ids(
        self,
        state: JobState | str,
        job_type: str | None = None,
        start: int = 0,
        stop: int = -1,
    ) -> list[int]:
        """Job ids in a state collection, in collection order."""
        members = await self._client.zrange(
            self._keys.state(JobState(state).value, job_type), start, stop
        )
        return [int(m) for m in members]

    @store_call
    async def card(self, state: JobState | str, job_type: str | None = None) -> int:
        """Number of jobs in a state collection."""
        return int(await self._client.zcard(self._keys.state(JobState(state).value, job_type)))

    @store_call
    async def earliest_delayed(self, limit: int) -> list[tuple[int, int, int]]:
        """
        The earliest-due delayed jobs.

        Returns:
            Up to `limit` tuples of (id, delay, created_at). Jobs removed
            between the two reads are skipped.
        """
        members = await self._client.zrange(self._keys.state(JobState.DELAYED.value), 0, limit - 1)
        if not members:
            return []

        async with self._client.pipeline(transaction=False) as pipe:
            for member in members:
                pipe.hmget(self._keys.job(int(member)), "delay", "created_at")
            rows = await pipe.execute()

        entries = []
        for member, (delay, created_at) in zip(members, rows):
            if delay is None or created_at is None:
                continue
            entries.append((int(member), int(delay), int(created_at)))
        return entries

    @store_call
    async def types(self) -> set[str]:
        """Known job types."""
        return set(await self._client.smembers(self._keys.types))

    @store_call
    async def setting(self, name: str) -> str | None:
        return await self._client.hget(self._keys.settings, name)

    @store_call
    async def incr_work_time(self, ms: int) -> int:
        """Add handler execution time to the aggregate counter."""
        return int(await self._client.incrby(self._keys.work_time, ms))

    @store_call
    async def work_time(self) -> int:
        value = await self._client.get(self._keys.work_time)
        return int(value or 0)
