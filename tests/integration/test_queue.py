"""
Integration tests for the queue facade and the cross-process event relay.
"""

import asyncio
import json

import pytest

from jobqueue.constants import JobState
from jobqueue.exceptions import JobNotFoundError
from jobqueue.queue import Queue, create_queue


class TestQueueQueries:
    """Tests for counts and lookups."""

    @pytest.mark.asyncio
    async def test_card_grows_with_enqueues(self, queue: Queue):
        """Test that K enqueues grow the inactive count by K."""
        before = await queue.inactive_count()

        for n in range(4):
            await queue.create_job("email", {"n": n}).save()

        assert await queue.inactive_count() == before + 4
        assert await queue.card(JobState.INACTIVE) == before + 4

    @pytest.mark.asyncio
    async def test_stats(self, queue: Queue):
        await queue.create_job("email").save()
        await queue.create_job("email").set_delay(60_000).save()

        stats = await queue.stats()

        assert stats == {
            "inactive": 1,
            "active": 0,
            "delayed": 1,
            "complete": 0,
            "failed": 0,
        }

    @pytest.mark.asyncio
    async def test_types_and_settings(self, queue: Queue):
        await queue.create("email").save()
        await queue.create("video").save()
        await queue.client.hset(queue.keys.settings, "retention", "7d")

        assert await queue.types() == {"email", "video"}
        assert await queue.setting("retention") == "7d"

    @pytest.mark.asyncio
    async def test_remove_job(self, queue: Queue):
        job = await queue.create_job("email").save()

        await queue.remove_job(job.id)

        assert await queue.inactive_count() == 0
        with pytest.raises(JobNotFoundError):
            await queue.get_job(job.id)
        with pytest.raises(JobNotFoundError):
            await queue.remove_job(job.id)

    @pytest.mark.asyncio
    async def test_prefixes_are_isolated(self, client_factory, queue: Queue, test_settings):
        other = create_queue(client_factory, "elsewhere", settings=test_settings)
        try:
            await queue.create_job("email").save()

            assert await other.inactive_count() == 0
            assert await other.types() == set()
        finally:
            await other.shutdown()


class TestEventRelayAcrossProcesses:
    """Tests for events published by one queue reaching another."""

    @pytest.mark.asyncio
    async def test_remote_completion_reaches_local_handle(
        self, queue: Queue, other_queue: Queue
    ):
        """Test that a handle sees the completion done by another process."""
        completed = asyncio.Event()
        durations = []

        job = await queue.create_job("email").save()
        job.on("complete", lambda duration: (durations.append(duration), completed.set()))

        other_queue.process("email", lambda job, context: None)

        await asyncio.wait_for(completed.wait(), timeout=3.0)
        assert job.state == JobState.COMPLETE
        assert durations == [job.duration]
        assert job.id not in queue.events.registry

    @pytest.mark.asyncio
    async def test_remote_progress_updates_local_copy(
        self, queue: Queue, other_queue: Queue, eventually
    ):
        progress = []
        job = await queue.create_job("video").save()
        job.on("progress", progress.append)

        async def handler(claimed, context):
            await context.progress(25)
            await context.progress(100)

        other_queue.process("video", handler)

        await eventually(lambda: job.state == JobState.COMPLETE)
        assert progress == [25, 100]
        assert job.progress_pct == 100

    @pytest.mark.asyncio
    async def test_feed_sees_other_process_enqueue(
        self, queue: Queue, other_queue: Queue, eventually
    ):
        """Test that the queue feed relays events from other processes with the id last."""
        enqueued = []
        other_queue.on("job enqueue", lambda *args: enqueued.append(args))
        await eventually(lambda: other_queue.events.subscribed)

        job = await queue.create_job("video").save()

        await eventually(lambda: enqueued)
        assert enqueued == [("video", job.id)]

    @pytest.mark.asyncio
    async def test_retry_keeps_handle_tracked(
        self, queue: Queue, other_queue: Queue, eventually
    ):
        """Test that a retried job keeps relaying until its final outcome."""
        events = []
        job = await queue.create_job("email").set_attempts(2).save()
        job.on("failed attempt", lambda error: events.append("failed attempt"))
        job.on("complete", lambda duration: events.append("complete"))

        async def handler(claimed, context):
            if context.attempt == 1:
                raise RuntimeError("flaky")

        other_queue.process("email", handler)

        await eventually(lambda: "complete" in events)
        assert events == ["failed attempt", "complete"]

    @pytest.mark.asyncio
    async def test_publish_and_untrack(self, queue: Queue, other_queue: Queue, eventually):
        """Test out-of-script publishing and that untracked handles stop receiving."""
        received = []
        other_queue.events.subscribe(received.append, "progress")
        await eventually(lambda: other_queue.events.subscribed)

        job = await queue.create_job("email").save()
        seen = []
        job.on("progress", seen.append)
        queue.events.untrack(job.id)

        assert await queue.events.publish(job.id, "progress", 10) >= 1

        await eventually(lambda: received)
        assert [(e.id, e.args) for e in received] == [(job.id, [10])]
        assert seen == []

    @pytest.mark.asyncio
    async def test_remove_event(self, queue: Queue, other_queue: Queue, eventually):
        removed = []
        job = await queue.create_job("email").save()
        job.on("remove", lambda: removed.append(job.id))

        await other_queue.remove_job(job.id)

        await eventually(lambda: removed)
        assert job.state is None
        assert job.id not in queue.events.registry

    @pytest.mark.asyncio
    async def test_unappliable_message_keeps_receive_loop(
        self, queue: Queue, other_queue: Queue, eventually
    ):
        """Test that a message a handle cannot apply leaves the relay running."""
        removed = []
        job = await queue.create_job("email").save()
        job.on("remove", lambda: removed.append(job.id))
        await eventually(lambda: queue.events.subscribed)

        raw = json.dumps({"id": job.id, "event": "progress", "args": ["abc"]})
        await queue.client.publish(queue.keys.events, raw)
        await other_queue.remove_job(job.id)

        await eventually(lambda: removed)
        assert not queue.events._task.done()
        assert job.id not in queue.events.registry


class TestQueueLifecycle:
    """Tests for errors and teardown."""

    @pytest.mark.asyncio
    async def test_error_channel(self, queue: Queue):
        errors = []
        queue.on("error", errors.append)
        error = RuntimeError("promoter tick failed")

        queue.emit_error(error)

        assert errors == [error]

    @pytest.mark.asyncio
    async def test_shutdown_clears_registry(self, client_factory, prefix, test_settings):
        """Test that leaving the context drops tracked handles and stops everything."""
        async with create_queue(client_factory, prefix, settings=test_settings) as q:
            await q.create_job("email").save()
            q.process("email", lambda job, context: None)
            q.promote()
            assert len(q.events.registry) == 1

        assert len(q.events.registry) == 0
        assert q.events.subscribed is False
        assert q.promoting is False
        assert q.workers == []
