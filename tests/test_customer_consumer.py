"""
Tests for CustomerConsumer.

Covers:
  - create / update / delete / bulk import / stats handlers
  - principal verification on every handler
  - success and failure events on customer.events
  - end-to-end through the JobConsumer loop (create + duplicate)
  - unknown job types are dropped
"""
import asyncio

import pytest
import pytest_asyncio
from pydantic import ValidationError

from consumers.base import VerificationError
from consumers.customer import CustomerConsumer, CustomerNotFound
from database.store_base import StorageError
from job_queue.broker import Channels, Job, Queues, failed_queue_name
from models.jobs import CustomerJobType


def _data(owner, **extra):
    return {"userId": owner.id, "userEmail": owner.email, **extra}


@pytest_asyncio.fixture
async def consumer(broker, seeded_store, recorder):
    await broker.subscribe(Channels.CUSTOMER_EVENTS, recorder)
    return CustomerConsumer(broker, seeded_store, import_batch_size=100, poll_timeout=0.05, error_backoff=0.01)


async def _create(consumer, owner, email="john@example.com", name="John Doe"):
    job = Job(type="CREATE_CUSTOMER", data=_data(owner, customerData={"name": name, "email": email}))
    return await consumer.handle_job(job)


class TestDispatch:
    def test_every_job_type_is_routed(self, consumer):
        assert set(consumer.routes()) == set(CustomerJobType)

    @pytest.mark.asyncio
    async def test_unknown_job_type_is_dropped(self, consumer):
        assert await consumer.handle_job(Job(type="MERGE_CUSTOMERS", data={})) is None

    @pytest.mark.asyncio
    async def test_invalid_payload_fails(self, consumer, recorder):
        with pytest.raises(ValidationError):
            await consumer.handle_job(Job(type="DELETE_CUSTOMER", data={"userId": "x"}))
        [event] = recorder.of_type("customer.deletion.failed")
        assert event["data"]["userId"] == "x"
        assert "userEmail" in event["data"]["error"]

    @pytest.mark.asyncio
    async def test_invalid_payload_through_loop_is_dead_lettered(self, consumer, broker, recorder):
        await consumer.start()
        try:
            await broker.enqueue(Queues.CUSTOMER_JOBS, "UPDATE_CUSTOMER", {"customerId": "c9"})
            for _ in range(200):
                if consumer.consumer.failed == 1:
                    break
                await asyncio.sleep(0.01)
        finally:
            await consumer.stop()
        [event] = recorder.of_type("customer.update.failed")
        assert event["data"]["customerId"] == "c9"
        [dead] = await broker.peek(failed_queue_name(Queues.CUSTOMER_JOBS))
        assert dead.type == "UPDATE_CUSTOMER"


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_publishes_created(self, consumer, owner, recorder, seeded_store):
        customer = await _create(consumer, owner)
        assert customer.email == "john@example.com"
        assert customer.created_by == owner.id

        [event] = recorder.of_type("customer.created")
        assert event["data"]["customerId"] == customer.id
        assert event["data"]["userId"] == owner.id
        assert "created_by_email" not in event["data"]["customerData"]

    @pytest.mark.asyncio
    async def test_duplicate_email_fails(self, consumer, owner, recorder):
        await _create(consumer, owner)
        with pytest.raises(StorageError, match="already exists"):
            await _create(consumer, owner, name="John Again")
        [event] = recorder.of_type("customer.creation.failed")
        assert event["data"]["error"] == "Customer with this email already exists"
        assert event["data"]["customerData"]["name"] == "John Again"

    @pytest.mark.asyncio
    async def test_unknown_user_fails_verification(self, consumer, recorder):
        job = Job(type="CREATE_CUSTOMER", data={
            "userId": "ghost", "userEmail": "ghost@example.com",
            "customerData": {"name": "A", "email": "a@example.com"},
        })
        with pytest.raises(VerificationError):
            await consumer.handle_job(job)
        assert recorder.of_type("customer.creation.failed")

    @pytest.mark.asyncio
    async def test_email_mismatch_fails_verification(self, consumer, owner):
        job = Job(type="CREATE_CUSTOMER", data={
            "userId": owner.id, "userEmail": "forged@example.com",
            "customerData": {"name": "A", "email": "a@example.com"},
        })
        with pytest.raises(VerificationError, match="User verification failed"):
            await consumer.handle_job(job)


class TestUpdateDelete:
    @pytest.mark.asyncio
    async def test_update_ignores_email(self, consumer, owner, recorder):
        customer = await _create(consumer, owner)
        job = Job(type="UPDATE_CUSTOMER", data=_data(
            owner, customerId=customer.id, updateData={"name": "Johnny", "email": "new@example.com"},
        ))
        updated = await consumer.handle_job(job)
        assert updated.name == "Johnny"
        assert updated.email == "john@example.com"
        assert recorder.of_type("customer.updated")[0]["data"]["customerId"] == customer.id

    @pytest.mark.asyncio
    async def test_update_missing_customer(self, consumer, owner, recorder):
        job = Job(type="UPDATE_CUSTOMER", data=_data(owner, customerId="nope", updateData={"name": "X"}))
        with pytest.raises(CustomerNotFound, match="not found or access denied"):
            await consumer.handle_job(job)
        assert recorder.of_type("customer.update.failed")[0]["data"]["customerId"] == "nope"

    @pytest.mark.asyncio
    async def test_delete_is_soft(self, consumer, owner, recorder, seeded_store):
        customer = await _create(consumer, owner)
        await consumer.handle_job(Job(type="DELETE_CUSTOMER", data=_data(owner, customerId=customer.id)))
        stored = await seeded_store.get_customer(customer.id)
        assert stored is not None
        assert stored.is_active is False
        assert recorder.of_type("customer.deleted")

    @pytest.mark.asyncio
    async def test_delete_missing_publishes_failure(self, consumer, owner, recorder):
        with pytest.raises(CustomerNotFound):
            await consumer.handle_job(Job(type="DELETE_CUSTOMER", data=_data(owner, customerId="nope")))
        assert recorder.of_type("customer.deletion.failed")


class TestBulkImport:
    @pytest.mark.asyncio
    async def test_batches_fail_independently(self, broker, seeded_store, owner, recorder):
        await broker.subscribe(Channels.CUSTOMER_EVENTS, recorder)
        consumer = CustomerConsumer(broker, seeded_store, import_batch_size=3)
        rows = [{"name": f"C{i}", "email": f"c{i}@example.com"} for i in range(7)]
        rows[4]["email"] = rows[3]["email"]   # duplicate inside batch 2

        results = await consumer.handle_job(Job(type="BULK_IMPORT_CUSTOMERS", data=_data(owner, customers=rows)))
        assert results["imported"] == 4
        assert results["failed"] == 3
        assert [e["batch"] for e in results["errors"]] == [2]

        [event] = recorder.of_type("customer.bulk.import.completed")
        assert event["data"]["results"]["imported"] == 4

    @pytest.mark.asyncio
    async def test_default_batch_size_is_100(self, consumer, owner, seeded_store):
        rows = [{"name": f"C{i}", "email": f"c{i}@example.com"} for i in range(150)]
        results = await consumer.handle_job(Job(type="BULK_IMPORT_CUSTOMERS", data=_data(owner, customers=rows)))
        assert results == {"imported": 150, "failed": 0, "errors": []}
        assert seeded_store.stats()["customers"] == 150

    @pytest.mark.asyncio
    async def test_verification_failure_publishes_failed(self, consumer, recorder):
        job = Job(type="BULK_IMPORT_CUSTOMERS", data={
            "userId": "ghost", "userEmail": "g@example.com", "customers": [],
        })
        with pytest.raises(VerificationError):
            await consumer.handle_job(job)
        assert recorder.of_type("customer.bulk.import.failed")[0]["data"]["userId"] == "ghost"


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_replaced(self, consumer, owner, recorder):
        customer = await _create(consumer, owner)
        job = Job(type="UPDATE_CUSTOMER_STATS", data=_data(
            owner, customerId=customer.id, stats={"orders": 4},
        ))
        updated = await consumer.handle_job(job)
        assert updated.stats == {"orders": 4}
        assert recorder.of_type("customer.stats.updated")

    @pytest.mark.asyncio
    async def test_stats_require_principal(self, consumer, owner):
        customer = await _create(consumer, owner)
        job = Job(type="UPDATE_CUSTOMER_STATS", data={
            "userId": owner.id, "userEmail": "wrong@example.com",
            "customerId": customer.id, "stats": {},
        })
        with pytest.raises(VerificationError):
            await consumer.handle_job(job)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_create_then_duplicate_through_loop(self, consumer, broker, owner, recorder, seeded_store):
        data = _data(owner, customerData={"name": "John Doe", "email": "john@example.com"})
        await consumer.start()
        try:
            await broker.enqueue(Queues.CUSTOMER_JOBS, "CREATE_CUSTOMER", data)
            await broker.enqueue(Queues.CUSTOMER_JOBS, "CREATE_CUSTOMER", data)
            for _ in range(100):
                if consumer.consumer.processed + consumer.consumer.failed == 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await consumer.stop()

        created = await seeded_store.find_customer_by_email("john@example.com", owner.id)
        assert created is not None
        assert recorder.of_type("customer.created")[0]["data"]["customerId"] == created.id
        assert recorder.of_type("customer.creation.failed")

        [dead] = await broker.peek(failed_queue_name(Queues.CUSTOMER_JOBS))
        assert dead.error == "Customer with this email already exists"
        assert await broker.queue_stats(Queues.CUSTOMER_JOBS) == {"pending": 0, "failed": 1, "total": 1}

    @pytest.mark.asyncio
    async def test_validation_events_are_handled(self, consumer, broker):
        await consumer.start()
        try:
            delivered = await broker.subscriber.deliver(
                Channels.CUSTOMER_EVENTS,
                '{"type": "customer.validation.failed", "data": {"error": "bad email"}}',
            )
        finally:
            await consumer.stop()
        assert delivered == 2
