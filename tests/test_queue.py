"""Tests for the retrying job queue."""

import pytest

from po_pipeline.core.exceptions import ConfigurationMissingError, TransientIOError
from po_pipeline.core.models import ExtractionJob
from po_pipeline.workflow.queue import JobQueue, RetryPolicy
from po_pipeline.workflow.store import dead_letter_key

NO_DELAY = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


def job(upload_id="u-1", priority=5):
    return ExtractionJob(upload_id=upload_id, merchant_id="m-1", priority=priority)


class TestRetryPolicy:

    def test_delay_doubles_and_caps(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 5.0, 5.0]

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(TransientIOError("download", "503"), 1)
        assert policy.should_retry(RuntimeError("unexpected"), 2)
        assert not policy.should_retry(TransientIOError("download", "503"), 3)
        assert not policy.should_retry(ConfigurationMissingError("m-1"), 1)


class TestJobQueue:

    def test_rejects_zero_workers(self, store):
        with pytest.raises(ValueError):
            JobQueue(lambda j: None, store, worker_concurrency=0)

    @pytest.mark.asyncio
    async def test_successful_job(self, store):
        async def handler(j):
            return f"done {j.upload_id}"

        queue = JobQueue(handler, store, NO_DELAY)
        await queue.enqueue(job())

        results = await queue.run_until_empty()

        assert results == {"job_u-1": "done u-1"}
        assert queue.stats["deliveries"] == 1
        assert queue.stats["outstanding"] == 0

    @pytest.mark.asyncio
    async def test_retry_then_success(self, store):
        seen = []

        async def handler(j):
            seen.append(j.attempts_made)
            if len(seen) < 3:
                raise TransientIOError("download", "connection reset")
            return "ok"

        queue = JobQueue(handler, store, NO_DELAY)
        await queue.enqueue(job())

        results = await queue.run_until_empty()

        assert results == {"job_u-1": "ok"}
        assert seen == [0, 1, 2]
        assert queue.dead_letters == []

    @pytest.mark.asyncio
    async def test_exhausted_job_is_dead_lettered(self, store):
        async def handler(j):
            raise TransientIOError("download", "still down")

        queue = JobQueue(handler, store, NO_DELAY)
        await queue.enqueue(job())

        results = await queue.run_until_empty()

        assert results == {}
        assert queue.deliveries == 3
        record = queue.dead_letters[0]
        assert record.attempts == 3
        assert record.retryable
        assert record.error_type == "TransientIOError"
        stored = await store.get(dead_letter_key("job_u-1"))
        assert stored["attempts"] == 3
        assert stored["job"]["attempts_made"] == 3

    @pytest.mark.asyncio
    async def test_non_retryable_job_fails_fast(self, store):
        async def handler(j):
            raise ConfigurationMissingError(j.merchant_id, "ai_settings", "no AI settings configured")

        queue = JobQueue(handler, store, NO_DELAY)
        await queue.enqueue(job())

        await queue.run_until_empty()

        assert queue.deliveries == 1
        assert queue.dead_letters[0].attempts == 1
        assert not queue.dead_letters[0].retryable
        assert "no AI settings configured" in queue.dead_letters[0].error

    @pytest.mark.asyncio
    async def test_delayed_retry_keeps_queue_open(self, store):
        calls = []

        async def handler(j):
            calls.append(j.attempts_made)
            if len(calls) == 1:
                raise TransientIOError("download", "busy")
            return "ok"

        queue = JobQueue(handler, store, RetryPolicy(max_attempts=2, base_delay=0.01, max_delay=0.01))
        await queue.enqueue(job())

        results = await queue.run_until_empty()

        assert calls == [0, 1]
        assert results == {"job_u-1": "ok"}

    @pytest.mark.asyncio
    async def test_lower_priority_value_is_served_first(self, store):
        order = []

        async def handler(j):
            order.append(j.upload_id)

        queue = JobQueue(handler, store, NO_DELAY, worker_concurrency=1)
        await queue.enqueue(job("low", priority=9))
        await queue.enqueue(job("high", priority=1))
        await queue.enqueue(job("mid-a", priority=5))
        await queue.enqueue(job("mid-b", priority=5))

        await queue.run_until_empty()

        assert order == ["high", "mid-a", "mid-b", "low"]

    @pytest.mark.asyncio
    async def test_empty_queue_returns_immediately(self, store):
        queue = JobQueue(lambda j: None, store)
        assert await queue.run_until_empty() == {}
