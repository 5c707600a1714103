"""
FastAPI Application — Monitoring, admin and vendor webhook endpoints.

Provides:
- Broker health and per-queue statistics
- System status summary across all monitored queues
- Manual job submission and event publishing (operational testing)
- Dead-letter replay
- Direct vendor sends, delivery receipt webhook and vendor statistics

The pipeline (broker, store, consumers, vendor) is started and stopped by
the application lifespan.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config.settings import get_settings
from core.pipeline import Pipeline
from models.schemas import DeliveryReceipt, OutboundEmail

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class TestJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    queue_name: str = Field(alias="queueName", min_length=1)
    job_type: str = Field(alias="jobType", min_length=1)
    job_data: dict[str, Any] = Field(default_factory=dict, alias="jobData")


class TestEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    channel: str = Field(min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    event_data: dict[str, Any] = Field(default_factory=dict, alias="eventData")


class SendBulkRequest(BaseModel):
    emails: list[OutboundEmail] = Field(min_length=1)


def _pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    pipeline = pipeline or Pipeline(get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        logger.info("campaign_relay_started",
                    broker=type(pipeline.broker).__name__,
                    store=type(pipeline.store).__name__)
        yield
        await pipeline.stop()
        logger.info("campaign_relay_stopped")

    app = FastAPI(
        title="Campaign Relay API",
        description="Job queue, campaign delivery and vendor receipt pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    # ══════════════════════════════════════════════════════════
    #  HEALTH & MONITORING
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        status = await _pipeline(request).monitoring.health()
        code = 200 if status["status"] == "healthy" else 503
        return JSONResponse(status_code=code, content={"success": code == 200, "data": status})

    @app.get("/api/v1/queues/stats")
    async def queue_stats(request: Request):
        return {"success": True, "data": await _pipeline(request).monitoring.queue_stats()}

    @app.get("/api/v1/system/status")
    async def system_status(request: Request):
        return {"success": True, "data": await _pipeline(request).monitoring.system_status()}

    # ══════════════════════════════════════════════════════════
    #  ADMIN
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/queues/test-job")
    async def submit_test_job(req: TestJobRequest, request: Request):
        job = await _pipeline(request).monitoring.submit_test_job(
            req.queue_name, req.job_type, req.job_data,
        )
        return {
            "success": True,
            "message": f"Test job submitted to {req.queue_name}",
            "data": {"queueName": req.queue_name, "jobType": req.job_type,
                     "jobId": job.job_id, "submittedAt": job.enqueued_at},
        }

    @app.post("/api/v1/queues/test-event")
    async def publish_test_event(req: TestEventRequest, request: Request):
        event = await _pipeline(request).monitoring.publish_test_event(
            req.channel, req.event_type, req.event_data,
        )
        return {
            "success": True,
            "message": f"Event published to {req.channel}",
            "data": {"channel": req.channel, "eventType": req.event_type,
                     "eventId": event.event_id, "publishedAt": event.published_at},
        }

    @app.get("/api/v1/queues/{queue_name}")
    async def queue_details(queue_name: str, request: Request):
        return {"success": True, "data": await _pipeline(request).monitoring.queue_details(queue_name)}

    @app.post("/api/v1/queues/{queue_name}/replay")
    async def replay_failed(queue_name: str, request: Request, limit: int = 100):
        count = await _pipeline(request).monitoring.replay_failed(queue_name, limit)
        return {"success": True, "data": {"queueName": queue_name, "replayed": count}}

    # ══════════════════════════════════════════════════════════
    #  VENDOR
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/vendor/send-email")
    async def send_email(email: OutboundEmail, request: Request):
        result = await _pipeline(request).vendor.send(email)
        return {"success": True, "message": "Email submitted to vendor API", "data": result}

    @app.post("/api/v1/vendor/send-bulk")
    async def send_bulk(req: SendBulkRequest, request: Request):
        result = await _pipeline(request).vendor.send_bulk(req.emails)
        return {
            "success": True,
            "message": f"Bulk email batch processed: {result.sent} sent, {result.failed} failed",
            "data": result.to_dict(),
        }

    @app.post("/api/v1/vendor/delivery-receipt")
    async def delivery_receipt(receipt: DeliveryReceipt, request: Request):
        outcome = await _pipeline(request).receipts.handle(receipt)
        if outcome.status == "not_found":
            raise HTTPException(status_code=404, detail="Communication log not found")
        if outcome.status == "ignored":
            return {"success": True, "message": "Delivery receipt ignored, log already final",
                    "data": outcome.model_dump(mode="json")}
        return {"success": True, "message": "Delivery receipt processed successfully",
                "data": outcome.model_dump(mode="json")}

    @app.get("/api/v1/vendor/stats")
    async def vendor_stats(request: Request):
        return {"success": True, "data": _pipeline(request).monitoring.vendor_stats()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
