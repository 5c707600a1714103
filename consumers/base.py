"""
Domain Consumer — Typed dispatch from one job queue to handler coroutines.

Each subclass owns:
  - the queue it consumes and the channel it publishes outcome events on
  - a closed enum of job types and a route per member:
        {JobType: (PayloadModel, handler, failure_event_type)}
    checked for coverage when the consumer is built
  - optional event handlers for channels it listens on

Handlers raise on failure. The JobConsumer loop turns that into a
dead-letter entry; handlers publish their own failure event first.
"""
from __future__ import annotations

import abc
import structlog
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Awaitable, Callable

from database.store_base import BaseStore
from job_queue.broker import Broker, BrokerError, Job
from job_queue.consumer import JobConsumer
from job_queue.subscriber import EventHandler
from models.jobs import JobPayload
from models.schemas import User

logger = structlog.get_logger()

JobRoute = tuple[type[JobPayload], Callable[[Any], Awaitable[Any]], str]

# Job data keys echoed into a failure event when the payload itself is invalid
IDENTITY_KEYS = ("userId", "customerId", "campaignId")


class VerificationError(Exception):
    """The acting principal does not exist or does not match the job payload."""


class DomainConsumer(abc.ABC):

    queue: str = ""
    events_channel: str = ""
    job_types: type[Enum]

    def __init__(
        self,
        broker: Broker,
        store: BaseStore,
        poll_timeout: float = 10.0,
        error_backoff: float = 5.0,
    ):
        self.broker = broker
        self.store = store
        self._routes = self.routes()
        missing = [t.value for t in self.job_types if t not in self._routes]
        if missing:
            raise ValueError(f"{type(self).__name__} has no route for job types: {missing}")
        self._consumer = JobConsumer(
            broker, self.queue, self.handle_job,
            poll_timeout=poll_timeout, error_backoff=error_backoff,
        )

    @abc.abstractmethod
    def routes(self) -> dict[Enum, JobRoute]:
        ...

    def event_handlers(self) -> dict[str, EventHandler]:
        """Channel → handler map registered on start()."""
        return {}

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def consumer(self) -> JobConsumer:
        return self._consumer

    @property
    def running(self) -> bool:
        return self._consumer.running

    async def start(self):
        for channel, handler in self.event_handlers().items():
            await self.broker.subscribe(channel, handler)
        await self._consumer.start_background()
        logger.info("domain_consumer_started", consumer=type(self).__name__, queue=self.queue)

    async def stop(self):
        await self._consumer.stop()
        logger.info("domain_consumer_stopped", consumer=type(self).__name__, queue=self.queue)

    # ── Dispatch ──────────────────────────────────────────────

    async def handle_job(self, job: Job) -> Any:
        try:
            job_type = self.job_types(job.type)
        except ValueError:
            logger.warning("unknown_job_type", queue=self.queue, job_id=job.job_id, job_type=job.type)
            return None

        model, handler, failure_type = self._routes[job_type]
        data = job.data if isinstance(job.data, dict) else {}
        identity = {key: data[key] for key in IDENTITY_KEYS if key in data}
        async with self.failure_event(failure_type, **identity):
            payload = model.model_validate(job.data)
        logger.info("job_dispatched", queue=self.queue, job_id=job.job_id, job_type=job_type.value)
        return await handler(payload)

    async def verify_principal(self, user_id: str, user_email: str) -> User:
        user = await self.store.find_user(user_id)
        if user is None or user.email != user_email:
            raise VerificationError("User verification failed")
        return user

    # ── Events ────────────────────────────────────────────────

    async def publish(self, event_type: str, data: dict[str, Any]):
        await self.broker.publish(self.events_channel, event_type, data)

    @asynccontextmanager
    async def failure_event(self, event_type: str, **context):
        """Publish `event_type` with the error and `context` if the block raises."""
        try:
            yield
        except Exception as e:
            try:
                await self.publish(event_type, {"error": str(e), **context})
            except BrokerError as publish_error:
                logger.error("failure_event_not_published",
                             event_type=event_type,
                             error=str(publish_error))
            raise
