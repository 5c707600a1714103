"""
Broker — Abstract queue/event substrate with Redis and in-memory backends.

Topology:
  <name>            — FIFO job queue (e.g. customer.jobs, campaign.jobs)
  <name>:failed     — dead-letter list paired with every queue
  <channel>         — fire-and-forget pub/sub channel (e.g. customer.events)

Job wire schema (JSON):
  {
      "id":        "<epoch-ms>-<random>",
      "type":      job kind, e.g. CREATE_CUSTOMER,
      "data":      job payload,
      "timestamp": ISO timestamp when the job was enqueued,
      "status":    pending | failed,
      "error":     handler error message (dead-letter copies only),
      "failedAt":  ISO timestamp of the failure (dead-letter copies only),
      "metadata":  arbitrary extra data,
  }

Event wire schema (JSON):
  {"id", "type", "data", "timestamp", "metadata"}
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from tenacity import retry, stop_after_attempt, wait_exponential

from job_queue.subscriber import EventHandler, EventSubscriber

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class BrokerError(Exception):
    """Base exception for broker operations."""


class BrokerUnavailable(BrokerError):
    """The underlying substrate could not be reached."""


# ──────────────────────────────────────────────────────────────
#  Names
# ──────────────────────────────────────────────────────────────

class Queues:
    CUSTOMER_JOBS = "customer.jobs"
    CAMPAIGN_JOBS = "campaign.jobs"
    ORDER_JOBS = "order.jobs"


class Channels:
    CUSTOMER_EVENTS = "customer.events"
    CAMPAIGN_EVENTS = "campaign.events"


class JobStatus:
    PENDING = "pending"
    FAILED = "failed"


def failed_queue_name(queue: str) -> str:
    return f"{queue}:failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


# ──────────────────────────────────────────────────────────────
#  Job & Event
# ──────────────────────────────────────────────────────────────

@dataclass
class Job:
    """A unit of work on a queue."""
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""
    enqueued_at: str = ""
    status: str = JobStatus.PENDING
    error: Optional[str] = None
    failed_at: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.job_id:
            self.job_id = generate_id()
        if not self.enqueued_at:
            self.enqueued_at = _now_iso()

    def to_dict(self) -> dict[str, Any]:
        d = {
            "id": self.job_id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.enqueued_at,
            "status": self.status,
            "metadata": self.metadata,
        }
        if self.error is not None:
            d["error"] = self.error
            d["failedAt"] = self.failed_at
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            type=data["type"],
            data=data.get("data") or {},
            job_id=data.get("id", ""),
            enqueued_at=data.get("timestamp", ""),
            status=data.get("status", JobStatus.PENDING),
            error=data.get("error"),
            failed_at=data.get("failedAt"),
            metadata=data.get("metadata") or {},
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> Job:
        return cls.from_dict(json.loads(raw))


@dataclass
class Event:
    """A fire-and-forget notification on a channel."""
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = ""
    published_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.event_id:
            self.event_id = generate_id()
        if not self.published_at:
            self.published_at = _now_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.published_at,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class Broker(ABC):
    """
    Process-wide queue and pub/sub substrate.

    Backends implement the small set of primitives at the bottom of this
    class; everything callers use (enqueue, dead_letter, publish, stats…)
    is built on top of them here.
    """

    def __init__(self):
        self.subscriber = EventSubscriber()

    @abstractmethod
    async def connect(self):
        """Establish connection to the substrate."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def dequeue_blocking(self, queue: str, timeout: float) -> Optional[Job]:
        """Pop the head of `queue`, waiting up to `timeout` seconds. None on timeout."""
        ...

    # ── Jobs ──────────────────────────────────────────────

    async def enqueue(
        self,
        queue: str,
        job_type: str,
        data: dict[str, Any] = None,
        metadata: dict[str, Any] = None,
    ) -> Job:
        """Append a new pending job to the tail of `queue`."""
        job = Job(type=job_type, data=data or {}, metadata=metadata or {})
        await self._push(queue, job.to_json())
        logger.info("job_enqueued", queue=queue, job_id=job.job_id, job_type=job_type)
        return job

    async def dead_letter(self, queue: str, job: Job, error: str) -> Job:
        """Copy a failed job, annotated with the error, onto `<queue>:failed`."""
        failed = replace(
            job,
            status=JobStatus.FAILED,
            error=error,
            failed_at=_now_iso(),
            metadata=dict(job.metadata),
        )
        await self._push(failed_queue_name(queue), failed.to_json())
        logger.warning("job_dead_lettered", queue=queue, job_id=job.job_id, error=error)
        return failed

    async def peek(self, queue: str, count: int = 10) -> list[Job]:
        """Oldest `count` jobs on `queue`, without consuming them."""
        return [job for job in (self._decode(queue, raw) for raw in await self._range(queue, count)) if job]

    async def replay_failed(self, queue: str, limit: int = 100) -> int:
        """Move dead-lettered jobs back onto `queue` as fresh pending jobs."""
        source = failed_queue_name(queue)
        replayed = 0
        while replayed < limit:
            raw = await self._pop_nowait(source)
            if raw is None:
                break
            job = self._decode(source, raw)
            if job is None:
                continue
            fresh = Job(
                type=job.type,
                data=job.data,
                job_id=job.job_id,
                metadata={
                    **job.metadata,
                    "replayed_from": source,
                    "last_error": job.error,
                    "replay_count": job.metadata.get("replay_count", 0) + 1,
                },
            )
            await self._push(queue, fresh.to_json())
            replayed += 1
        if replayed:
            logger.info("dead_letters_replayed", queue=queue, count=replayed)
        return replayed

    # ── Events ────────────────────────────────────────────

    async def publish(
        self,
        channel: str,
        event_type: str,
        data: dict[str, Any] = None,
        metadata: dict[str, Any] = None,
    ) -> Event:
        """Deliver an event to the channel's current subscribers. No replay."""
        event = Event(type=event_type, data=data or {}, metadata=metadata or {})
        await self._publish_raw(channel, event.to_json())
        logger.info("event_published", channel=channel, event_type=event_type, event_id=event.event_id)
        return event

    async def subscribe(self, channel: str, handler: EventHandler) -> None:
        """Register `handler` for every future event on `channel`."""
        if self.subscriber.register(channel, handler):
            await self._listen(channel)
            logger.info("channel_subscribed", channel=channel)

    # ── Monitoring ────────────────────────────────────────

    async def queue_stats(self, queue: str) -> dict[str, int]:
        """Point-in-time depth of a queue and its dead-letter list."""
        try:
            pending = await self._length(queue)
            failed = await self._length(failed_queue_name(queue))
        except BrokerError as e:
            logger.error("queue_stats_failed", queue=queue, error=str(e))
            return {"pending": 0, "failed": 0, "total": 0}
        return {"pending": pending, "failed": failed, "total": pending + failed}

    async def health_check(self) -> dict[str, Any]:
        """Liveness probe. Never raises."""
        try:
            await self._ping()
            return {"status": "healthy", "timestamp": _now_iso()}
        except Exception as e:
            return {"status": "unhealthy", "error": str(e), "timestamp": _now_iso()}

    # ── Backend primitives ────────────────────────────────

    @abstractmethod
    async def _push(self, queue: str, payload: str) -> None:
        ...

    @abstractmethod
    async def _pop_nowait(self, queue: str) -> Optional[str]:
        ...

    @abstractmethod
    async def _range(self, queue: str, count: int) -> list[str]:
        ...

    @abstractmethod
    async def _length(self, queue: str) -> int:
        ...

    @abstractmethod
    async def _publish_raw(self, channel: str, payload: str) -> None:
        ...

    @abstractmethod
    async def _listen(self, channel: str) -> None:
        ...

    @abstractmethod
    async def _ping(self) -> None:
        ...

    @staticmethod
    def _decode(queue: str, raw: str | bytes) -> Optional[Job]:
        try:
            return Job.from_json(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("job_payload_malformed", queue=queue, error=str(e))
            return None


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisBroker(Broker):
    """
    Production broker backed by Redis lists and pub/sub.

    - Queues are lists: LPUSH at the tail, BRPOP from the head (FIFO)
    - Competing consumers across processes each receive distinct jobs
    - Pub/sub messages are read by one listener task and fanned out locally
    """

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        super().__init__()
        self._redis_url = redis_url
        self._redis = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    @contextmanager
    def _guard(self, operation: str):
        from redis.exceptions import RedisError
        try:
            yield
        except (RedisError, OSError) as e:
            raise BrokerUnavailable(f"Redis {operation} failed: {e}") from e

    def _client(self):
        if self._redis is None:
            raise BrokerUnavailable("Redis broker is not connected")
        return self._redis

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._initial_ping()
        self._pubsub = self._redis.pubsub()
        logger.info("redis_broker_connected", url=self._redis_url)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, max=5), reraise=True)
    async def _initial_ping(self):
        with self._guard("connect"):
            await self._redis.ping()

    async def close(self):
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        logger.info("redis_broker_closed")

    async def dequeue_blocking(self, queue: str, timeout: float) -> Optional[Job]:
        with self._guard("brpop"):
            result = await self._client().brpop([queue], timeout=timeout)
        if not result:
            return None
        _, raw = result
        return self._decode(queue, raw)

    async def _push(self, queue: str, payload: str) -> None:
        with self._guard("lpush"):
            await self._client().lpush(queue, payload)

    async def _pop_nowait(self, queue: str) -> Optional[str]:
        with self._guard("rpop"):
            return await self._client().rpop(queue)

    async def _range(self, queue: str, count: int) -> list[str]:
        # Oldest entries sit at the right end of the list
        with self._guard("lrange"):
            items = await self._client().lrange(queue, -count, -1)
        return list(reversed(items))

    async def _length(self, queue: str) -> int:
        with self._guard("llen"):
            return await self._client().llen(queue)

    async def _publish_raw(self, channel: str, payload: str) -> None:
        with self._guard("publish"):
            await self._client().publish(channel, payload)

    async def _listen(self, channel: str) -> None:
        if self._pubsub is None:
            raise BrokerUnavailable("Redis broker is not connected")
        with self._guard("subscribe"):
            await self._pubsub.subscribe(channel)
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen_loop(), name="redis_pubsub_listener")

    async def _ping(self) -> None:
        with self._guard("ping"):
            await self._client().ping()

    async def _listen_loop(self):
        """Read pub/sub messages and hand them to the local subscriber."""
        from redis.exceptions import RedisError
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0,
                )
                if message and message.get("type") == "message":
                    await self.subscriber.deliver(message["channel"], message["data"])
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                logger.error("pubsub_listener_error", error=str(e))
                await asyncio.sleep(1)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryBroker(Broker):
    """
    Development/test broker backed by deques and an asyncio.Condition.
    Single-process only. Published events are fanned out inline.
    """

    def __init__(self):
        super().__init__()
        self._queues: dict[str, deque[str]] = defaultdict(deque)
        self._cond = asyncio.Condition()
        self._connected = False

    def _require_connection(self):
        if not self._connected:
            raise BrokerUnavailable("In-memory broker is not connected")

    async def connect(self):
        self._connected = True
        logger.info("inmemory_broker_connected")

    async def close(self):
        self._connected = False
        async with self._cond:
            self._cond.notify_all()
        logger.info("inmemory_broker_closed")

    async def dequeue_blocking(self, queue: str, timeout: float) -> Optional[Job]:
        self._require_connection()
        async with self._cond:
            try:
                await asyncio.wait_for(
                    self._cond.wait_for(lambda: bool(self._queues[queue]) or not self._connected),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            if not self._queues[queue]:
                return None
            raw = self._queues[queue].popleft()
        return self._decode(queue, raw)

    async def _push(self, queue: str, payload: str) -> None:
        self._require_connection()
        async with self._cond:
            self._queues[queue].append(payload)
            self._cond.notify_all()

    async def _pop_nowait(self, queue: str) -> Optional[str]:
        self._require_connection()
        q = self._queues[queue]
        return q.popleft() if q else None

    async def _range(self, queue: str, count: int) -> list[str]:
        self._require_connection()
        return list(self._queues[queue])[:count]

    async def _length(self, queue: str) -> int:
        self._require_connection()
        return len(self._queues[queue])

    async def _publish_raw(self, channel: str, payload: str) -> None:
        self._require_connection()
        await self.subscriber.deliver(channel, payload)

    async def _listen(self, channel: str) -> None:
        pass  # handlers are called directly from _publish_raw

    async def _ping(self) -> None:
        self._require_connection()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_broker(broker_config: dict[str, Any] = None) -> Broker:
    """Factory: create the appropriate broker backend."""
    config = broker_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        logger.info("broker_created", backend="redis")
        return RedisBroker(redis_url=url)

    logger.info("broker_created", backend="memory")
    return InMemoryBroker()
