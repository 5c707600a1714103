"""
Customer Consumer — Applies customer mutations submitted through customer.jobs.

Jobs:
  CREATE_CUSTOMER         → customer.created          / customer.creation.failed
  UPDATE_CUSTOMER         → customer.updated          / customer.update.failed
  DELETE_CUSTOMER         → customer.deleted          / customer.deletion.failed
  BULK_IMPORT_CUSTOMERS   → customer.bulk.import.completed / customer.bulk.import.failed
  UPDATE_CUSTOMER_STATS   → customer.stats.updated    / customer.stats.update.failed

Also listens on customer.events for validation and activity notifications.
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Any

from consumers.base import DomainConsumer, JobRoute
from core.delivery import create_batches
from database.store_base import BaseStore, StorageError
from job_queue.broker import Broker, Channels, Queues
from job_queue.subscriber import EventHandler
from models.jobs import (
    BulkImportCustomersPayload,
    CreateCustomerPayload,
    CustomerJobType,
    DeleteCustomerPayload,
    UpdateCustomerPayload,
    UpdateCustomerStatsPayload,
)
from models.schemas import Customer

logger = structlog.get_logger()


class CustomerNotFound(LookupError):
    """No customer matched the id (and owner, where scoped)."""


class CustomerConsumer(DomainConsumer):

    queue = Queues.CUSTOMER_JOBS
    events_channel = Channels.CUSTOMER_EVENTS
    job_types = CustomerJobType

    def __init__(self, broker: Broker, store: BaseStore, import_batch_size: int = 100, **kwargs):
        self.import_batch_size = import_batch_size
        super().__init__(broker, store, **kwargs)

    def routes(self) -> dict[Enum, JobRoute]:
        return {
            CustomerJobType.CREATE_CUSTOMER:
                (CreateCustomerPayload, self.create_customer, "customer.creation.failed"),
            CustomerJobType.UPDATE_CUSTOMER:
                (UpdateCustomerPayload, self.update_customer, "customer.update.failed"),
            CustomerJobType.DELETE_CUSTOMER:
                (DeleteCustomerPayload, self.delete_customer, "customer.deletion.failed"),
            CustomerJobType.BULK_IMPORT_CUSTOMERS:
                (BulkImportCustomersPayload, self.bulk_import_customers, "customer.bulk.import.failed"),
            CustomerJobType.UPDATE_CUSTOMER_STATS:
                (UpdateCustomerStatsPayload, self.update_customer_stats, "customer.stats.update.failed"),
        }

    def event_handlers(self) -> dict[str, EventHandler]:
        return {Channels.CUSTOMER_EVENTS: self.handle_customer_event}

    # ── Jobs ──────────────────────────────────────────────────

    async def create_customer(self, payload: CreateCustomerPayload) -> Customer:
        async with self.failure_event("customer.creation.failed", customerData=payload.customer_data):
            await self.verify_principal(payload.user_id, payload.user_email)

            email = str(payload.customer_data.get("email", ""))
            if await self.store.find_customer_by_email(email, payload.user_id):
                raise StorageError("Customer with this email already exists")

            customer = await self.store.create_customer(
                payload.customer_data, payload.user_id, payload.user_email,
            )
            await self.publish("customer.created", {
                "customerId": customer.id,
                "userId": payload.user_id,
                "customerData": customer.public_fields(),
            })
            logger.info("customer_created", customer_id=customer.id, email=customer.email)
            return customer

    async def update_customer(self, payload: UpdateCustomerPayload) -> Customer:
        async with self.failure_event("customer.update.failed", customerId=payload.customer_id):
            await self.verify_principal(payload.user_id, payload.user_email)

            updates = {k: v for k, v in payload.update_data.items() if k != "email"}
            customer = await self.store.update_customer(
                payload.customer_id, payload.user_id, payload.user_email, updates,
            )
            if customer is None:
                raise CustomerNotFound("Customer not found or access denied")

            await self.publish("customer.updated", {
                "customerId": customer.id,
                "userId": payload.user_id,
                "customerData": customer.public_fields(),
            })
            logger.info("customer_updated", customer_id=customer.id)
            return customer

    async def delete_customer(self, payload: DeleteCustomerPayload) -> Customer:
        async with self.failure_event("customer.deletion.failed", customerId=payload.customer_id):
            await self.verify_principal(payload.user_id, payload.user_email)

            customer = await self.store.soft_delete_customer(
                payload.customer_id, payload.user_id, payload.user_email,
            )
            if customer is None:
                raise CustomerNotFound("Customer not found or access denied")

            await self.publish("customer.deleted", {
                "customerId": customer.id,
                "userId": payload.user_id,
            })
            logger.info("customer_deactivated", customer_id=customer.id)
            return customer

    async def bulk_import_customers(self, payload: BulkImportCustomersPayload) -> dict[str, Any]:
        """
        Insert customers in fixed-size batches. A failing batch is recorded
        and skipped; the remaining batches still run.
        """
        async with self.failure_event("customer.bulk.import.failed", userId=payload.user_id):
            await self.verify_principal(payload.user_id, payload.user_email)

            results: dict[str, Any] = {"imported": 0, "failed": 0, "errors": []}
            for number, batch in enumerate(create_batches(payload.customers, self.import_batch_size), start=1):
                try:
                    await self.store.bulk_insert_customers(batch, payload.user_id, payload.user_email)
                except StorageError as e:
                    results["failed"] += len(batch)
                    results["errors"].append({"batch": number, "error": str(e)})
                    logger.error("customer_import_batch_failed", batch=number, size=len(batch), error=str(e))
                    continue
                results["imported"] += len(batch)
                logger.info("customer_import_batch_done", batch=number, size=len(batch))

            await self.publish("customer.bulk.import.completed", {
                "userId": payload.user_id,
                "results": results,
            })
            logger.info("customer_bulk_import_completed",
                        imported=results["imported"], failed=results["failed"])
            return results

    async def update_customer_stats(self, payload: UpdateCustomerStatsPayload) -> Customer:
        async with self.failure_event("customer.stats.update.failed", customerId=payload.customer_id):
            await self.verify_principal(payload.user_id, payload.user_email)

            customer = await self.store.update_customer_stats(payload.customer_id, payload.stats)
            if customer is None:
                raise CustomerNotFound("Customer not found")

            await self.publish("customer.stats.updated", {
                "customerId": customer.id,
                "stats": customer.stats,
            })
            logger.info("customer_stats_updated", customer_id=customer.id)
            return customer

    # ── Events ────────────────────────────────────────────────

    async def handle_customer_event(self, event: dict[str, Any]):
        event_type = event.get("type")
        data = event.get("data") or {}

        if event_type == "customer.validation.success":
            logger.info("customer_validation_succeeded", email=data.get("email"))
        elif event_type == "customer.validation.failed":
            logger.warning("customer_validation_failed", error=data.get("error"))
        elif event_type == "customer.activity.updated":
            logger.info("customer_activity_updated", customer_id=data.get("customerId"))
        elif "error" in event and event_type is None:
            logger.warning("customer_event_malformed", raw=event.get("raw"))
        else:
            logger.debug("customer_event_ignored", event_type=event_type)
