"""
Integration tests for delayed job promotion.
"""

import asyncio

import pytest

from jobqueue.constants import JobState
from jobqueue.promoter import Promoter
from jobqueue.queue import Queue


class TestPromoter:
    """Tests for the recurring promoter."""

    @pytest.mark.asyncio
    async def test_delayed_until_due(self, queue: Queue, eventually):
        """Test that a delayed job stays delayed until due, then becomes inactive."""
        job = await queue.create_job("email").set_delay(1000).save()
        queue.promote(interval_ms=50)

        loop = asyncio.get_running_loop()
        started = loop.time()
        for offset in (0.2, 0.5, 0.75):
            await asyncio.sleep(max(0.0, started + offset - loop.time()))
            assert (await queue.get_job(job.id)).state == JobState.DELAYED

        await eventually(lambda: queue.inactive(), timeout=2.0)
        assert await queue.inactive() == [job.id]
        assert await queue.delayed_count() == 0

    @pytest.mark.asyncio
    async def test_promoted_job_keeps_priority(self, queue: Queue, eventually):
        low = await queue.create_job("email").set_priority("low").set_delay(50).save()
        high = await queue.create_job("email").set_priority("high").set_delay(100).save()

        queue.promote()

        await eventually(lambda: _card(queue, "inactive", 2))
        assert await queue.inactive() == [high.id, low.id]

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, queue: Queue):
        """Test that promote() while running keeps the same task."""
        queue.promote()
        promoter = queue._promoter

        queue.promote(interval_ms=10)

        assert queue._promoter is promoter
        assert queue.promoting is True

        await queue.stop_promotion()
        assert queue.promoting is False
        await queue.stop_promotion()

    @pytest.mark.asyncio
    async def test_run_once_skips_jobs_not_due(self, queue: Queue):
        await queue.create_job("email").set_delay(60_000).save()
        promoter = Promoter(queue, interval_ms=50, batch_size=10)

        assert await promoter.run_once() == 0
        assert await queue.delayed_count() == 1

    @pytest.mark.asyncio
    async def test_batch_size_limits_pass(self, queue: Queue):
        for _ in range(3):
            await queue.create_job("email").set_delay(1).save()
        await asyncio.sleep(0.01)
        promoter = Promoter(queue, interval_ms=50, batch_size=2)

        assert await promoter.run_once() == 2
        assert await promoter.run_once() == 1


class TestConcurrentPromotion:
    """Tests for several processes promoting the same jobs."""

    @pytest.mark.asyncio
    async def test_single_promotion_across_processes(
        self, queue: Queue, other_queue: Queue, eventually
    ):
        """Test that two promoting processes promote a due job exactly once."""
        promotions = []
        queue.on("job promotion", lambda job_id: promotions.append(job_id))

        job = await queue.create_job("email").set_delay(100).save()
        queue.promote(interval_ms=20)
        other_queue.promote(interval_ms=20)

        await eventually(lambda: promotions)
        await asyncio.sleep(0.2)

        assert promotions == [job.id]
        assert await queue.inactive() == [job.id]
        assert await queue.delayed_count() == 0

    @pytest.mark.asyncio
    async def test_racing_passes_promote_once(self, queue: Queue, other_queue: Queue):
        """Test that simultaneous passes split the due jobs without overlap."""
        jobs = [await queue.create_job("email").set_delay(1).save() for _ in range(5)]
        await asyncio.sleep(0.01)

        counts = await asyncio.gather(
            Promoter(queue, 50, 10).run_once(),
            Promoter(other_queue, 50, 10).run_once(),
        )

        assert sum(counts) == len(jobs)
        assert sorted(await queue.inactive()) == [job.id for job in jobs]


async def _card(queue: Queue, state: str, expected: int) -> bool:
    return await queue.card(state) == expected
