"""
Job Consumer — Pulls jobs from one queue and hands each to a handler.

One loop per (queue, handler) pair, running as an asyncio task for the
lifetime of the process. Several processes may run loops against the same
queue; the broker's atomic pop guarantees each job reaches one of them.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │ API / admin  │──enq──▶│ <queue>         │──pop─▶│ JobConsumer│
  └──────────────┘       └─────────────────┘       └─────┬──────┘
                                                          │ handler raised
                         ┌─────────────────┐              │
                         │ <queue>:failed  │◀─────────────┘
                         └─────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

from job_queue.broker import Broker, Job

logger = structlog.get_logger()

JobHandler = Callable[[Job], Awaitable[Any]]


class JobConsumer:
    """
    Blocking-poll-and-dispatch loop.

    Usage:
        consumer = JobConsumer(broker, "customer.jobs", handler)
        await consumer.start()             # blocks until stop()
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()              # lets an in-flight handler finish
    """

    def __init__(
        self,
        broker: Broker,
        queue: str,
        handler: JobHandler,
        poll_timeout: float = 10.0,
        error_backoff: float = 5.0,
    ):
        self.broker = broker
        self.queue = queue
        self.handler = handler
        self.poll_timeout = poll_timeout
        self.error_backoff = error_backoff
        self.processed = 0
        self.failed = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Run the loop until stop() is called."""
        self._stop.clear()
        self._running = True
        await self._loop()

    async def start_background(self) -> asyncio.Task:
        """Start the loop in a background task. Returns the task handle."""
        self._stop.clear()
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"consumer:{self.queue}")
        return self._task

    async def _loop(self):
        logger.info("consumer_started", queue=self.queue)
        try:
            while not self._stop.is_set():
                await self.run_once()
        finally:
            self._running = False
            logger.info("consumer_stopped", queue=self.queue,
                        processed=self.processed, failed=self.failed)

    async def stop(self):
        """Signal the loop to exit after the current poll or job and wait for it."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def run_once(self) -> Optional[Job]:
        """
        One iteration: poll, dispatch, dead-letter on handler failure.
        Broker failures are absorbed here with a backoff so the loop survives
        substrate outages; the job being handled at the time is not retried.
        """
        try:
            job = await self.broker.dequeue_blocking(self.queue, self.poll_timeout)
            if job is None:
                return None
            await self._process(job)
            return job
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("consumer_broker_error",
                         queue=self.queue,
                         error=str(e),
                         exc_info=True)
            await self._backoff()
            return None

    async def _process(self, job: Job):
        logger.info("processing_job", queue=self.queue, job_id=job.job_id, job_type=job.type)
        try:
            await self.handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logger.error("job_failed",
                         queue=self.queue,
                         job_id=job.job_id,
                         job_type=job.type,
                         error=str(e))
            await self.broker.dead_letter(self.queue, job, str(e))
            return
        self.processed += 1
        logger.info("job_completed", queue=self.queue, job_id=job.job_id)

    async def _backoff(self):
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.error_backoff)
        except asyncio.TimeoutError:
            pass
