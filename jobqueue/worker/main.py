"""
Worker loop for executing jobs of one type.

Each loop claims the highest-priority, oldest inactive job of its type,
runs the handler and records completion or failure, one job at a time.
"""

import asyncio
import importlib
import logging
import os
import signal
import time
from typing import TYPE_CHECKING

from redis.asyncio import Redis

from jobqueue.config import get_settings
from jobqueue.constants import JobEventName, JobState
from jobqueue.exceptions import (
    CorruptJob,
    InvalidTransition,
    JobNotFoundError,
    StoreUnavailable,
)
from jobqueue.job import Job
from jobqueue.observability.logging import job_log_context, setup_logging
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import (
    instrument_redis,
    job_span,
    record_outcome,
    setup_tracing,
)
from jobqueue.store.repository import JobRepository
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.handlers import JobHandler, execute_handler, list_handlers

if TYPE_CHECKING:
    from jobqueue.queue import Queue

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs of one type.

    Features:
    - Atomic claim per candidate; a lost race moves on to the next candidate
    - Exponential idle backoff between polls
    - Handler crashes converted to failed attempts
    - Graceful stop after the in-flight job finishes
    """

    def __init__(
        self,
        queue: "Queue",
        job_type: str,
        client: Redis,
        handler: JobHandler,
        worker_id: str | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The owning queue.
            job_type: Job type this worker claims.
            client: Store client dedicated to this job type.
            handler: Handler invoked for each claimed job.
            worker_id: Identifier used in logs. Defaults to hostname + PID.
        """
        settings = queue.settings

        self.queue = queue
        self.job_type = job_type
        self.handler = handler
        self.repository = JobRepository(client, queue.keys)
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}-{job_type}"

        self.poll_interval = settings.worker_poll_interval_seconds
        self.max_poll_interval = settings.worker_poll_max_interval_seconds
        self.claim_batch = settings.worker_claim_batch
        self.max_store_failures = settings.worker_max_store_failures

        self._running = False
        self._stopping = asyncio.Event()
        self._current_job: Job | None = None
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def current_job(self) -> Job | None:
        """The job being processed, if any."""
        return self._current_job

    async def start(self) -> None:
        """Run the loop until stop() is called or the store is lost for good."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "job_type": self.job_type}
        )

        self._running = True
        idle = self.poll_interval
        failures = 0

        while self._running:
            try:
                job = await self._claim_next()
            except StoreUnavailable as e:
                failures += 1
                logger.error(
                    f"Store unavailable in worker loop: {e}",
                    extra={"worker_id": self.worker_id, "failures": failures}
                )
                self.queue.emit_error(e)
                if failures >= self.max_store_failures:
                    self.queue.emit_error(
                        StoreUnavailable(
                            f"worker {self.worker_id} stopped after "
                            f"{failures} consecutive store failures"
                        )
                    )
                    break
                await self._idle(idle)
                idle = min(idle * 2, self.max_poll_interval)
                continue
            except Exception as e:
                logger.exception(
                    f"Unexpected error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                self.queue.emit_error(e)
                await self._idle(idle)
                idle = min(idle * 2, self.max_poll_interval)
                continue

            failures = 0

            # If no job was claimed, wait before polling again
            if job is None:
                await self._idle(idle)
                idle = min(idle * 2, self.max_poll_interval)
                continue

            idle = self.poll_interval
            await self._process(job)

        self._running = False
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        """Stop after the in-flight job, if any, has finished."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stopping.set()

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _claim_next(self) -> Job | None:
        """
        Claim the first inactive job of this type that no one else takes first.

        A claimed job whose hash cannot be decoded is failed in place and
        reported on the queue's error channel.

        Returns:
            The claimed job, loaded as the claim wrote it, or None.
        """
        candidates = await self.repository.ids(
            JobState.INACTIVE, self.job_type, 0, self.claim_batch - 1
        )
        for job_id in candidates:
            job = Job(self.queue, self.job_type, repository=self.repository)
            job.id = job_id
            try:
                await job.claim()
            except JobNotFoundError:
                self._metrics.record_claim(self.job_type, claimed=False)
                logger.debug(
                    "Claim lost to another worker",
                    extra={"job_id": job_id, "worker_id": self.worker_id}
                )
                continue
            except CorruptJob as e:
                await self._fail_corrupt(job_id, e)
                continue

            self._metrics.record_claim(self.job_type, claimed=True)
            return job
        return None

    async def _fail_corrupt(self, job_id: int, error: CorruptJob) -> None:
        logger.error(str(error), extra={"job_id": job_id, "worker_id": self.worker_id})
        self.queue.emit_error(error)
        try:
            await self.repository.fail(
                job_id, str(error), JobEventName.FAILED_ATTEMPT, JobEventName.FAILED
            )
        except (JobNotFoundError, InvalidTransition):
            pass

    async def _process(self, job: Job) -> None:
        """
        Execute a claimed job and record the outcome.

        Handles the full lifecycle:
        1. Run the handler with a progress reporter
        2. Complete the job and add to the queue's work time, or
        3. Fail the attempt (retry or terminal failure)
        """
        self._current_job = job
        context = JobContext(
            job=job,
            attempt=job.attempts_made + 1,
            max_attempts=job.max_attempts,
            report_progress=job.progress,
        )

        with job_log_context(job, self.worker_id), job_span(job, context.attempt) as span:
            logger.info("Executing job", extra={"attempt": context.attempt})
            start_time = time.monotonic()
            try:
                result = await execute_handler(self.handler, job, context)
                elapsed_ms = int(round((time.monotonic() - start_time) * 1000))

                state = await self._record(job, result, elapsed_ms, context.attempt)
                record_outcome(span, state.value, result.error)
                self._metrics.record_job_completed(
                    job_type=job.type,
                    status=state.value,
                    duration_seconds=elapsed_ms / 1000,
                )
            except (JobNotFoundError, InvalidTransition) as e:
                # Removed or moved by another process while the handler ran
                logger.warning(f"Could not record job outcome: {e}")
            except StoreUnavailable as e:
                # The job stays active: nothing recovers it without a lease
                logger.error(f"Store unavailable recording job outcome: {e}")
                self.queue.emit_error(e)
            except Exception as e:
                logger.exception(f"Unexpected error recording job outcome: {e}")
                self.queue.emit_error(e)
            finally:
                self._current_job = None

    async def _record(self, job: Job, result: JobResult, elapsed_ms: int, attempt: int) -> JobState:
        """Complete or fail the job according to `result`; returns its new state."""
        if result.success:
            await job.complete(elapsed_ms)
            await self.repository.incr_work_time(elapsed_ms)
            logger.info("Job completed successfully", extra={"duration_ms": elapsed_ms})
            return JobState.COMPLETE

        state = await job.fail(result.error or "Unknown error")
        logger.warning(
            "Job failed",
            extra={"error": result.error, "attempt": attempt, "state": state.value}
        )
        return state


async def run_async() -> None:
    """
    Run a worker process until SIGTERM/SIGINT.

    Imports the configured handler modules, then processes every registered
    job type with `worker_concurrency` loops each.
    """
    from jobqueue.queue import create_queue

    settings = get_settings()
    setup_logging()
    setup_metrics(settings.prometheus_port)
    setup_tracing()
    instrument_redis()

    for module in settings.handler_modules:
        importlib.import_module(module)

    job_types = list_handlers()
    if not job_types:
        logger.warning("No job handlers registered; set HANDLER_MODULES")

    queue = create_queue()
    stop = asyncio.Event()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    for job_type in job_types:
        queue.process(job_type, settings.worker_concurrency)
    if settings.worker_promote:
        queue.promote()

    try:
        await stop.wait()
    finally:
        orphaned = await queue.shutdown()
        if orphaned:
            logger.warning(f"{len(orphaned)} jobs left active at exit")


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
