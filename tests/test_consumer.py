"""
Tests for the JobConsumer loop.

Covers:
  - success path leaves nothing on the dead-letter queue
  - handler failure dead-letters the job exactly once
  - broker failure triggers backoff, then the loop resumes
  - stop() lets an in-flight handler finish
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from job_queue.broker import BrokerUnavailable, failed_queue_name
from job_queue.consumer import JobConsumer


class TestJobConsumer:
    @pytest.mark.asyncio
    async def test_success_is_not_dead_lettered(self, broker):
        handled = []

        async def handler(job):
            handled.append(job.job_id)

        job = await broker.enqueue("q", "T")
        consumer = JobConsumer(broker, "q", handler, poll_timeout=0.05)
        assert await consumer.run_once() is not None
        assert handled == [job.job_id]
        assert consumer.processed == 1
        assert (await broker.queue_stats("q"))["failed"] == 0

    @pytest.mark.asyncio
    async def test_failure_is_dead_lettered_once(self, broker):
        async def handler(job):
            raise ValueError("bad payload")

        job = await broker.enqueue("q", "T", {"x": 1})
        consumer = JobConsumer(broker, "q", handler, poll_timeout=0.05)
        await consumer.run_once()
        await consumer.run_once()   # idle poll, nothing retried

        failed = await broker.peek(failed_queue_name("q"))
        assert [j.job_id for j in failed] == [job.job_id]
        assert failed[0].error == "bad payload"
        assert consumer.failed == 1
        assert await broker.queue_stats("q") == {"pending": 0, "failed": 1, "total": 1}

    @pytest.mark.asyncio
    async def test_idle_poll_returns_none(self, broker):
        consumer = JobConsumer(broker, "q", AsyncMock(), poll_timeout=0.01)
        assert await consumer.run_once() is None

    @pytest.mark.asyncio
    async def test_broker_error_backs_off_and_recovers(self, broker):
        handler = AsyncMock()
        consumer = JobConsumer(broker, "q", handler, poll_timeout=0.01, error_backoff=0.01)
        original = broker.dequeue_blocking
        broker.dequeue_blocking = AsyncMock(side_effect=[BrokerUnavailable("down"), None])

        assert await consumer.run_once() is None
        assert await consumer.run_once() is None
        broker.dequeue_blocking = original

        await broker.enqueue("q", "T")
        assert await consumer.run_once() is not None
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_background_loop_processes_and_stops(self, broker):
        done = asyncio.Event()

        async def handler(job):
            done.set()

        consumer = JobConsumer(broker, "q", handler, poll_timeout=0.05)
        await consumer.start_background()
        await broker.enqueue("q", "T")
        await asyncio.wait_for(done.wait(), 1.0)
        await consumer.stop()
        assert not consumer.running
        assert consumer.processed == 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_handler(self, broker):
        started = asyncio.Event()
        finished = []

        async def slow_handler(job):
            started.set()
            await asyncio.sleep(0.1)
            finished.append(job.job_id)

        consumer = JobConsumer(broker, "q", slow_handler, poll_timeout=0.05)
        await consumer.start_background()
        job = await broker.enqueue("q", "T")
        await asyncio.wait_for(started.wait(), 1.0)
        await consumer.stop()
        assert finished == [job.job_id]

    @pytest.mark.asyncio
    async def test_stop_interrupts_backoff(self, broker):
        consumer = JobConsumer(broker, "q", AsyncMock(), poll_timeout=0.01, error_backoff=30)
        broker.dequeue_blocking = AsyncMock(side_effect=BrokerUnavailable("down"))
        await consumer.start_background()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(consumer.stop(), 1.0)
        assert not consumer.running
