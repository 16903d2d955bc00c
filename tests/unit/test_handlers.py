"""
Unit tests for job handlers.
"""

from unittest.mock import AsyncMock

import pytest

from jobqueue.exceptions import HandlerFailure
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.handlers import (
    execute_handler,
    get_handler,
    list_handlers,
    register_handler,
    unregister_handler,
)


class FakeJob:
    """Minimal stand-in for a claimed job."""

    id = 7
    type = "echo"
    data = {"message": "test"}


class TestHandlerRegistry:
    """Tests for the handler registry."""

    @pytest.fixture(autouse=True)
    def cleanup(self):
        yield
        unregister_handler("echo")

    def test_register_and_get(self):
        """Test registering a handler with the decorator."""

        @register_handler("echo")
        async def handle_echo(job, context):
            return {"echo": job.data}

        assert get_handler("echo") is handle_echo
        assert "echo" in list_handlers()

    def test_get_handler_not_exists(self):
        """Test getting a non-existent handler."""
        assert get_handler("nonexistent") is None

    def test_unregister(self):
        register_handler("echo")(lambda job, context: None)

        unregister_handler("echo")

        assert get_handler("echo") is None


class TestExecuteHandler:
    """Tests for handler invocation and result conversion."""

    @pytest.fixture
    def job_context(self) -> JobContext:
        """Create a test job context."""
        return JobContext(
            job=FakeJob(),
            attempt=1,
            max_attempts=3,
            report_progress=AsyncMock(),
        )

    @pytest.mark.asyncio
    async def test_none_is_success(self, job_context: JobContext):
        async def handler(job, context):
            return None

        result = await execute_handler(handler, job_context.job, job_context)

        assert result.success is True
        assert result.output is None

    @pytest.mark.asyncio
    async def test_dict_becomes_output(self, job_context: JobContext):
        """Test that a returned dict is kept as the output."""
        async def handler(job, context):
            return {"echo": job.data}

        result = await execute_handler(handler, job_context.job, job_context)

        assert result.success is True
        assert result.output == {"echo": {"message": "test"}}

    @pytest.mark.asyncio
    async def test_scalar_is_wrapped(self, job_context: JobContext):
        result = await execute_handler(lambda job, context: 42, job_context.job, job_context)

        assert result.output == {"result": 42}

    @pytest.mark.asyncio
    async def test_failed_result_gets_error(self, job_context: JobContext):
        """Test that a failed result without an error gets a default message."""
        async def handler(job, context):
            return JobResult(success=False)

        result = await execute_handler(handler, job_context.job, job_context)

        assert result.success is False
        assert result.error == "Handler reported failure"

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self, job_context: JobContext):
        """Test that a raising handler yields a failed result."""
        async def handler(job, context):
            raise ValueError("bad payload")

        result = await execute_handler(handler, job_context.job, job_context)

        assert result.success is False
        assert result.error == "Handler exception: ValueError: bad payload"

    @pytest.mark.asyncio
    async def test_handler_failure_message_kept(self, job_context: JobContext):
        """Test that HandlerFailure carries its message as the job error."""
        async def handler(job, context):
            raise HandlerFailure("recipient rejected")

        result = await execute_handler(handler, job_context.job, job_context)

        assert result.success is False
        assert result.error == "recipient rejected"


class TestJobContext:
    """Tests for JobContext."""

    @pytest.mark.asyncio
    async def test_progress_delegates(self):
        """Test that progress goes to the reporter."""
        reporter = AsyncMock()
        context = JobContext(job=FakeJob(), attempt=1, max_attempts=1, report_progress=reporter)

        await context.progress(3, 4)

        reporter.assert_awaited_once_with(3, 4)

    def test_attempt_bookkeeping(self):
        context = JobContext(job=FakeJob(), attempt=2, max_attempts=3, report_progress=AsyncMock())

        assert context.is_last_attempt is False
        assert context.remaining_attempts == 1

        context.attempt = 3
        assert context.is_last_attempt is True
        assert context.remaining_attempts == 0
