"""
Delayed job promoter.

Runs periodically to find delayed jobs whose due time has passed and moves
them to the inactive set. Promotion is the same guarded atomic transition
as every other state change, so several processes may promote concurrently:
the first one wins and the others see the job gone from the delayed set.
"""

import asyncio
import logging
import signal
from typing import TYPE_CHECKING

from jobqueue.config import get_settings
from jobqueue.constants import SPAN_PROMOTE
from jobqueue.exceptions import CorruptJob, InvalidTransition, JobNotFoundError, StoreUnavailable
from jobqueue.job import Job
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import create_span, instrument_redis, setup_tracing
from jobqueue.store.repository import now_ms

if TYPE_CHECKING:
    from jobqueue.queue import Queue

logger = logging.getLogger(__name__)


class Promoter:
    """
    Recurring task that promotes due delayed jobs.

    Runs periodically to:
    1. Read the earliest-due entries of the delayed set
    2. Promote the ones whose created_at + delay has passed
    3. Record metrics for monitoring
    """

    def __init__(self, queue: "Queue", interval_ms: int, batch_size: int):
        """
        Initialize the promoter.

        Args:
            queue: The owning queue.
            interval_ms: Milliseconds between ticks.
            batch_size: Maximum delayed entries inspected per tick.
        """
        self.queue = queue
        self.interval_ms = interval_ms
        self.batch_size = batch_size
        self._task: asyncio.Task | None = None
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        """Schedule the recurring task; a no-op when already running."""
        if self._task is not None:
            return
        logger.info(f"Promoter starting with interval {self.interval_ms}ms")
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel future ticks. A promotion already committed stays committed."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Promoter stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            try:
                promoted = await self.run_once()
                if promoted > 0:
                    logger.info(f"Promoted {promoted} delayed jobs")
            except StoreUnavailable as e:
                logger.error(f"Promotion tick failed: {e}")
                self.queue.emit_error(e)
            except Exception as e:
                logger.exception(f"Error in promoter loop: {e}")
                self.queue.emit_error(e)

    async def run_once(self) -> int:
        """
        Run one promotion pass (for testing or cron-style execution).

        Returns:
            Number of jobs this pass promoted.
        """
        promoted = 0
        with create_span(SPAN_PROMOTE, prefix=self.queue.prefix):
            entries = await self.queue.repository.earliest_delayed(self.batch_size)
            for job_id, delay, created_at in entries:
                now = now_ms()
                if max(created_at + delay - now, 0) != 0:
                    continue
                if await self._promote(job_id, now):
                    promoted += 1

        self._metrics.record_promotions(promoted)
        return promoted

    async def _promote(self, job_id: int, now: int) -> bool:
        try:
            job = await Job.get(self.queue, job_id)
            await job.promote(now)
        except (JobNotFoundError, InvalidTransition):
            # Removed, already promoted, or re-delayed by another process
            logger.debug("Skipped promotion", extra={"job_id": job_id})
            return False
        except CorruptJob as e:
            logger.error(str(e), extra={"job_id": job_id})
            self.queue.emit_error(e)
            return False
        return True


async def run_async() -> None:
    """Run a standalone promotion process until SIGTERM/SIGINT."""
    from jobqueue.queue import create_queue

    settings = get_settings()
    setup_logging()
    setup_metrics(settings.prometheus_port)
    setup_tracing()
    instrument_redis()

    queue = create_queue()
    stop = asyncio.Event()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    queue.promote()
    try:
        await stop.wait()
    finally:
        await queue.shutdown()


def run() -> None:
    """Run the promoter."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
