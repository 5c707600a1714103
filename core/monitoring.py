"""
Monitoring — Read-only snapshots of the pipeline plus a small admin surface.

All numbers are point-in-time and non-transactional: a queue can change
between two reads of the same summary.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.vendor import VendorSimulator
from consumers.base import DomainConsumer
from job_queue.broker import Broker, Event, Job, failed_queue_name

logger = structlog.get_logger()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_rate(total_jobs: int, total_failed: int) -> str:
    """Share of jobs not dead-lettered, formatted as a percentage string."""
    if total_jobs <= 0:
        return "100%"
    return f"{(total_jobs - total_failed) / total_jobs * 100:.2f}%"


class MonitoringService:

    def __init__(
        self,
        broker: Broker,
        queues: list[str],
        vendor: Optional[VendorSimulator] = None,
        consumers: Optional[dict[str, DomainConsumer]] = None,
    ):
        self.broker = broker
        self.queues = list(queues)
        self.vendor = vendor
        self.consumers = consumers or {}

    # ── Snapshots ─────────────────────────────────────────────

    async def queue_stats(self) -> dict[str, Any]:
        stats = {name: await self.broker.queue_stats(name) for name in self.queues}
        return {
            "queues": stats,
            "broker": await self.broker.health_check(),
            "timestamp": _now_iso(),
        }

    async def queue_details(self, name: str, peek: int = 10) -> dict[str, Any]:
        stats = await self.broker.queue_stats(name)
        details: dict[str, Any] = {"queueName": name, "stats": stats, "timestamp": _now_iso()}
        if peek > 0 and stats["failed"]:
            failed = await self.broker.peek(failed_queue_name(name), peek)
            details["failedJobs"] = [job.to_dict() for job in failed]
        return details

    async def health(self) -> dict[str, Any]:
        return await self.broker.health_check()

    async def system_status(self) -> dict[str, Any]:
        health = await self.broker.health_check()
        stats = {name: await self.broker.queue_stats(name) for name in self.queues}

        total_pending = sum(s["pending"] for s in stats.values())
        total_failed = sum(s["failed"] for s in stats.values())
        total_jobs = sum(s["total"] for s in stats.values())

        return {
            "broker": health,
            "queues": {
                "total": len(self.queues),
                "stats": stats,
                "summary": {
                    "totalJobs": total_jobs,
                    "totalPending": total_pending,
                    "totalFailed": total_failed,
                    "successRate": success_rate(total_jobs, total_failed),
                },
            },
            "consumers": {
                name: "running" if consumer.running else "stopped"
                for name, consumer in self.consumers.items()
            },
            "timestamp": _now_iso(),
        }

    def vendor_stats(self) -> dict[str, Any]:
        if self.vendor is None:
            return {}
        return self.vendor.get_stats()

    # ── Admin ─────────────────────────────────────────────────

    async def submit_test_job(
        self,
        queue: str,
        job_type: str,
        data: Optional[dict[str, Any]] = None,
        submitted_by: str = "manual",
    ) -> Job:
        job = await self.broker.enqueue(
            queue, job_type, data or {},
            metadata={"submittedBy": submitted_by, "submittedAt": _now_iso()},
        )
        logger.info("test_job_submitted", queue=queue, job_type=job_type, job_id=job.job_id)
        return job

    async def publish_test_event(
        self,
        channel: str,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        published_by: str = "manual",
    ) -> Event:
        event = await self.broker.publish(
            channel, event_type, data or {},
            metadata={"publishedBy": published_by, "publishedAt": _now_iso()},
        )
        logger.info("test_event_published", channel=channel, event_type=event_type)
        return event

    async def replay_failed(self, queue: str, limit: int = 100) -> int:
        return await self.broker.replay_failed(queue, limit)

