"""
Queue facade.

Binds the store, the event bus, the promoter and the workers: job creation,
state queries, worker registration and aggregate stats.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from redis.asyncio import Redis

from jobqueue.config import Settings, get_settings
from jobqueue.constants import QUEUE_EVENT_PREFIX, JobState
from jobqueue.emitter import Listener, Observable
from jobqueue.events import EventBus
from jobqueue.job import Job
from jobqueue.observability.metrics import get_metrics
from jobqueue.promoter import Promoter
from jobqueue.store.connection import ConnectionOptions, client_factory, close_client
from jobqueue.store.keys import Keyspace
from jobqueue.store.repository import JobRepository
from jobqueue.worker.handlers import JobHandler, get_handler
from jobqueue.worker.main import Worker

logger = logging.getLogger(__name__)


class Queue:
    """
    A named job queue over a shared Redis keyspace.

    Queue-level events: "job <event>" for every job mutation seen on the
    event topic (listeners get the event args followed by the job id), and
    "error" for failures not tied to a caller (worker loops, promoter,
    subscription).
    """

    def __init__(
        self,
        connection_options: ConnectionOptions = None,
        prefix: str | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the queue.

        Args:
            connection_options: Redis URL, host/port mapping or client factory.
            prefix: Key namespace. Defaults to the configured queue_prefix.
            settings: Overrides the cached environment settings.
        """
        self.settings = settings or get_settings()
        self.prefix = prefix or self.settings.queue_prefix
        self.keys = Keyspace(self.prefix)

        self._client_factory = client_factory(connection_options)
        self.client: Redis = self._client_factory()
        self.repository = JobRepository(self.client, self.keys)
        self.events = EventBus(self, self._client_factory)

        self._emitter = Observable()
        # pool of worker clients by type
        self._worker_clients: dict[str, Redis] = {}
        self._workers: list[tuple[Worker, asyncio.Task]] = []
        self._promoter: Promoter | None = None

    async def __aenter__(self) -> "Queue":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> Listener:
        """Register a listener; "job ..." events open the subscribe channel."""
        if event.startswith(QUEUE_EVENT_PREFIX):
            self.events.ensure_connected()
        return self._emitter.on(event, listener)

    def once(self, event: str, listener: Listener) -> Listener:
        if event.startswith(QUEUE_EVENT_PREFIX):
            self.events.ensure_connected()
        return self._emitter.once(event, listener)

    def off(self, event: str, listener: Listener | None = None) -> None:
        self._emitter.off(event, listener)

    def emit(self, event: str, *args: Any) -> bool:
        return self._emitter.emit(event, *args)

    def emit_error(self, error: BaseException) -> None:
        """Report an error not tied to a caller on the "error" channel."""
        if not self._emitter.emit("error", error):
            logger.error(f"Unhandled queue error: {error}", exc_info=error)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, job_type: str, data: Any = None) -> Job:
        """Create an unsaved job of `job_type` bound to this queue."""
        return Job(self, job_type, data)

    create = create_job

    async def get_job(self, job_id: int) -> Job:
        """
        Fetch a job by id.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        return await Job.get(self, job_id)

    async def remove_job(self, job_id: int) -> None:
        """
        Remove a job by its id.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await Job.get(self, job_id)
        await job.remove()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process(
        self,
        job_type: str,
        concurrency: int | JobHandler = 1,
        handler: JobHandler | None = None,
    ) -> list[Worker]:
        """
        Process jobs of `job_type` with `concurrency` independent loops.

        Args:
            job_type: The job type to claim.
            concurrency: Number of loops, or the handler (one loop).
            handler: Handler for each job; defaults to the registered one.

        Returns:
            The started workers.
        """
        if callable(concurrency):
            handler, concurrency = concurrency, 1

        handler = handler or get_handler(job_type)
        if handler is None:
            raise ValueError(f"no handler given or registered for job type {job_type!r}")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        client = self._worker_clients.get(job_type)
        if client is None:
            client = self._worker_clients[job_type] = self._client_factory()

        started = []
        for n in range(concurrency):
            worker = Worker(
                self,
                job_type,
                client,
                handler,
                worker_id=f"{job_type}-{len(self._workers) + 1}",
            )
            task = asyncio.create_task(worker.start())
            task.add_done_callback(self._worker_exited)
            self._workers.append((worker, task))
            started.append(worker)

        logger.info(
            "Started workers",
            extra={"job_type": job_type, "concurrency": concurrency}
        )
        return started

    @property
    def workers(self) -> list[Worker]:
        return [worker for worker, _ in self._workers]

    def _worker_exited(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.emit_error(error)

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def promote(self, interval_ms: int | None = None) -> None:
        """
        Promote delayed jobs, checking every `interval_ms`.

        Calling it again while promotion runs is a no-op.
        """
        if self._promoter is not None and self._promoter.running:
            return
        self._promoter = Promoter(
            self,
            interval_ms or self.settings.promotion_interval_ms,
            self.settings.promotion_batch_size,
        )
        self._promoter.start()

    async def stop_promotion(self) -> None:
        """Stop checking for delayed jobs."""
        if self._promoter is not None:
            await self._promoter.stop()
            self._promoter = None

    @property
    def promoting(self) -> bool:
        return self._promoter is not None and self._promoter.running

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def types(self) -> set[str]:
        """Get the job types present."""
        return await self.repository.types()

    async def setting(self, name: str) -> str | None:
        """Get queue setting `name`."""
        return await self.repository.setting(name)

    async def state(self, state: JobState | str) -> list[int]:
        """Return job ids with the given `state`, in processing order."""
        return await self.repository.ids(state)

    async def card(self, state: JobState | str) -> int:
        """Get cardinality of `state`."""
        return await self.repository.card(state)

    async def work_time(self) -> int:
        """Milliseconds of handler execution across all completed jobs."""
        return await self.repository.work_time()

    async def stats(self) -> dict[str, int]:
        """Cardinality of every state, also published as the queue depth gauge."""
        metrics = get_metrics()
        counts = {}
        for state in JobState:
            counts[state.value] = await self.card(state)
            metrics.update_queue_depth(state.value, counts[state.value])
        return counts

    def complete(self) -> Awaitable[list[int]]:
        """Completed jobs."""
        return self.state(JobState.COMPLETE)

    def failed(self) -> Awaitable[list[int]]:
        """Failed jobs."""
        return self.state(JobState.FAILED)

    def inactive(self) -> Awaitable[list[int]]:
        """Inactive jobs (queued)."""
        return self.state(JobState.INACTIVE)

    def active(self) -> Awaitable[list[int]]:
        """Active jobs (mid-process)."""
        return self.state(JobState.ACTIVE)

    def delayed(self) -> Awaitable[list[int]]:
        """Delayed jobs."""
        return self.state(JobState.DELAYED)

    def complete_count(self) -> Awaitable[int]:
        return self.card(JobState.COMPLETE)

    def failed_count(self) -> Awaitable[int]:
        return self.card(JobState.FAILED)

    def inactive_count(self) -> Awaitable[int]:
        return self.card(JobState.INACTIVE)

    def active_count(self) -> Awaitable[int]:
        return self.card(JobState.ACTIVE)

    def delayed_count(self) -> Awaitable[int]:
        return self.card(JobState.DELAYED)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self, timeout: float | None = None) -> list[int]:
        """
        Stop promotion and workers, close the event bus and all connections.

        Workers finish their in-flight job first. Loops still running after
        `timeout` seconds are cancelled; their jobs stay ACTIVE (orphaned).

        Returns:
            Ids of the jobs abandoned that way.
        """
        if timeout is None:
            timeout = self.settings.shutdown_timeout_seconds

        await self.stop_promotion()

        orphaned: list[int] = []
        if self._workers:
            for worker, _ in self._workers:
                worker.stop()

            tasks = [task for _, task in self._workers]
            logger.info(f"Waiting for {len(tasks)} workers to finish")
            _, pending = await asyncio.wait(tasks, timeout=timeout)

            for worker, task in self._workers:
                if task in pending:
                    if worker.current_job is not None and worker.current_job.id is not None:
                        orphaned.append(worker.current_job.id)
                    task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            if orphaned:
                logger.warning(
                    "Abandoned in-flight jobs on shutdown",
                    extra={"job_ids": orphaned}
                )
            self._workers.clear()

        await self.events.close()

        for client in self._worker_clients.values():
            await close_client(client)
        self._worker_clients.clear()
        await close_client(self.client)

        logger.info("Queue shut down", extra={"prefix": self.prefix})
        return orphaned


def create_queue(
    connection_options: ConnectionOptions = None,
    prefix: str | None = None,
    settings: Settings | None = None,
) -> Queue:
    """
    Create a new `Queue`.

    Args:
        connection_options: Redis URL, host/port mapping or client factory.
        prefix: Key namespace (defaults to "q").
        settings: Overrides the cached environment settings.

    Returns:
        Queue: The queue.
    """
    return Queue(connection_options, prefix, settings)
