"""
Tests for the FastAPI monitoring, admin and vendor endpoints.

The app is built around an in-memory pipeline with no simulated latency.
"""
import random
import time

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import BrokerConfig, DeliveryConfig, Settings, VendorConfig
from core.pipeline import Pipeline
from models.schemas import Campaign, CommunicationLog, DeliveryStatus, User


def _fast_settings() -> Settings:
    return Settings(
        broker=BrokerConfig(poll_timeout_seconds=0.05, error_backoff_seconds=0.01),
        delivery=DeliveryConfig(batch_delay_seconds=0),
        vendor=VendorConfig(send_delay_ms=(0, 0), receipt_delay_ms=(0, 0), stagger_ms=(0, 0)),
    )


@pytest.fixture
def pipeline():
    return Pipeline(_fast_settings(), rng=random.Random(42))


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline)) as c:
        yield c


def _wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestHealth:
    def test_healthy(self, client, pipeline):
        assert pipeline.started
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "healthy"

    def test_unhealthy_after_broker_closed(self, client, pipeline):
        client.portal.call(pipeline.broker.close)
        resp = client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["success"] is False


class TestQueues:
    def test_stats_lists_monitored_queues(self, client):
        data = client.get("/api/v1/queues/stats").json()["data"]
        assert set(data["queues"]) == {"customer.jobs", "order.jobs", "campaign.jobs"}

    def test_system_status(self, client):
        data = client.get("/api/v1/system/status").json()["data"]
        assert data["queues"]["total"] == 3
        assert data["queues"]["summary"]["successRate"] == "100%"
        assert data["consumers"] == {"customer": "running", "campaign": "running"}

    def test_submit_job_to_unconsumed_queue(self, client):
        resp = client.post("/api/v1/queues/test-job", json={
            "queueName": "order.jobs", "jobType": "CREATE_ORDER", "jobData": {"orderId": "o1"},
        })
        body = resp.json()
        assert resp.status_code == 200
        assert body["message"] == "Test job submitted to order.jobs"
        assert body["data"]["jobId"]

        details = client.get("/api/v1/queues/order.jobs").json()["data"]
        assert details["stats"]["pending"] == 1
        assert "failedJobs" not in details

    def test_submit_job_requires_fields(self, client):
        resp = client.post("/api/v1/queues/test-job", json={"queueName": "order.jobs"})
        assert resp.status_code == 422

    def test_failed_job_is_visible_and_replayable(self, client, pipeline):
        # CREATE_CUSTOMER for an unknown user fails verification
        client.post("/api/v1/queues/test-job", json={
            "queueName": "customer.jobs", "jobType": "CREATE_CUSTOMER",
            "jobData": {"userId": "u_x", "userEmail": "x@example.com",
                        "customerData": {"name": "N", "email": "n@example.com"}},
        })
        assert _wait_for(lambda: pipeline.customers.consumer.failed == 1)

        details = client.get("/api/v1/queues/customer.jobs").json()["data"]
        assert details["stats"]["failed"] == 1
        assert details["failedJobs"][0]["error"] == "User verification failed"

        resp = client.post("/api/v1/queues/customer.jobs/replay")
        assert resp.json()["data"] == {"queueName": "customer.jobs", "replayed": 1}
        assert _wait_for(lambda: pipeline.customers.consumer.failed == 2)

    def test_publish_event(self, client):
        resp = client.post("/api/v1/queues/test-event", json={
            "channel": "customer.events", "eventType": "customer.validation", "eventData": {"id": 1},
        })
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["eventType"] == "customer.validation"


class TestVendorEndpoints:
    def test_receipt_for_unknown_message(self, client):
        resp = client.post("/api/v1/vendor/delivery-receipt", json={
            "messageId": "msg_missing", "status": "SENT",
        })
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Communication log not found"

    def test_receipt_updates_log(self, client, pipeline):
        client.portal.call(pipeline.store.bulk_insert_communication_logs, [
            CommunicationLog(message_id="msg_api_1", campaign_id="c1", customer_id="cust_1",
                             recipient_email="a@example.com"),
        ])
        resp = client.post("/api/v1/vendor/delivery-receipt", json={
            "messageId": "msg_api_1", "status": "FAILED", "failureReason": "Mailbox full",
        })
        assert resp.status_code == 200
        assert resp.json()["data"]["log_status"] == "failed"

        log = client.portal.call(pipeline.store.get_communication_log, "msg_api_1")
        assert log.status == DeliveryStatus.FAILED
        assert log.failure_reason == "Mailbox full"

    def test_receipt_rejects_bad_status(self, client):
        resp = client.post("/api/v1/vendor/delivery-receipt", json={
            "messageId": "msg_1", "status": "BOUNCED",
        })
        assert resp.status_code == 422

    def test_campaign_delivery_updates_vendor_stats(self, client, pipeline, template):
        owner = User(id="u_api", name="Ops", email="ops@example.com")
        client.portal.call(pipeline.store.create_user, owner)
        client.portal.call(pipeline.store.create_campaign, Campaign(
            id="camp_api", name="API", message_template=template, created_by=owner.id,
        ))
        client.post("/api/v1/queues/test-job", json={
            "queueName": "campaign.jobs", "jobType": "DELIVER_CAMPAIGN",
            "jobData": {"userId": owner.id, "userEmail": owner.email, "campaignId": "camp_api",
                        "customers": [{"id": f"c{i}", "email": f"c{i}@example.com"} for i in range(3)]},
        })
        assert _wait_for(lambda: pipeline.campaigns.consumer.processed == 1)

        stats = client.get("/api/v1/vendor/stats").json()["data"]
        assert stats["totalSent"] == 3

    def test_second_receipt_is_ignored(self, client, pipeline):
        client.portal.call(pipeline.store.bulk_insert_communication_logs, [
            CommunicationLog(message_id="msg_api_2", campaign_id="c1", customer_id="cust_2",
                             recipient_email="b@example.com"),
        ])
        client.post("/api/v1/vendor/delivery-receipt", json={"messageId": "msg_api_2", "status": "SENT"})
        resp = client.post("/api/v1/vendor/delivery-receipt", json={
            "messageId": "msg_api_2", "status": "FAILED", "failureReason": "Mailbox full",
        })
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "ignored"
        log = client.portal.call(pipeline.store.get_communication_log, "msg_api_2")
        assert log.status == DeliveryStatus.SENT

    def test_send_email(self, client):
        resp = client.post("/api/v1/vendor/send-email", json={
            "messageId": "msg_direct_1", "to": "d@example.com", "subject": "Hi",
            "htmlContent": "<p>Hi</p>", "campaignId": "c1", "customerId": "cust_1",
        })
        body = resp.json()
        assert resp.status_code == 200
        assert body["message"] == "Email submitted to vendor API"
        assert body["data"]["vendorMessageId"].startswith("vendor_")

    def test_send_email_requires_recipient(self, client):
        resp = client.post("/api/v1/vendor/send-email", json={"messageId": "m", "subject": "Hi"})
        assert resp.status_code == 422

    def test_send_bulk(self, client):
        emails = [
            {"messageId": f"msg_bulk_{i}", "to": f"b{i}@example.com", "subject": "Hi"}
            for i in range(4)
        ]
        resp = client.post("/api/v1/vendor/send-bulk", json={"emails": emails})
        data = resp.json()["data"]
        assert data["total"] == 4
        assert data["sent"] + data["failed"] == 4
        assert resp.json()["message"] == f"Bulk email batch processed: {data['sent']} sent, {data['failed']} failed"

    def test_send_bulk_rejects_empty_batch(self, client):
        assert client.post("/api/v1/vendor/send-bulk", json={"emails": []}).status_code == 422
