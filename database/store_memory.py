"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Returns deep copies so callers never alias stored state
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from pydantic import ValidationError

from database.store_base import BaseStore, StorageError
from models.schemas import Campaign, CommunicationLog, Customer, DeliveryStatus, User, utcnow

logger = structlog.get_logger()

_IMMUTABLE_CUSTOMER_FIELDS = {"id", "email", "created_by", "created_by_email", "created_at"}


class InMemoryStore(BaseStore):
    """Full-featured in-memory store with the same interface as SqlStore."""

    def __init__(self):
        self._users: dict[str, User] = {}
        self._customers: dict[str, Customer] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._logs: dict[str, CommunicationLog] = {}          # message_id → log

        # Indexes
        self._email_index: dict[str, str] = {}                # "owner:email" → customer_id
        logger.info("inmemory_store_initialized")

    # ── Users ─────────────────────────────────────────────

    async def find_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def create_user(self, user: User) -> User:
        self._users[user.id] = user.model_copy(deep=True)
        return user

    # ── Customers ─────────────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def find_customer_by_email(self, email: str, owner_id: str) -> Optional[Customer]:
        cid = self._email_index.get(f"{owner_id}:{email.lower()}")
        return await self.get_customer(cid) if cid else None

    async def create_customer(self, data: dict[str, Any], owner_id: str, owner_email: str) -> Customer:
        customer = self._build_customer(data, owner_id, owner_email)
        if f"{owner_id}:{customer.email.lower()}" in self._email_index:
            raise StorageError(f"Duplicate customer email: {customer.email}")
        self._insert_customer(customer)
        return customer.model_copy(deep=True)

    async def update_customer(self, customer_id: str, owner_id: str, owner_email: str,
                              updates: dict[str, Any]) -> Optional[Customer]:
        customer = self._owned(customer_id, owner_id, owner_email)
        if customer is None:
            return None
        changes = {k: v for k, v in updates.items() if k not in _IMMUTABLE_CUSTOMER_FIELDS}
        try:
            updated = Customer.model_validate({**customer.model_dump(), **changes, "updated_at": utcnow()})
        except ValidationError as e:
            raise StorageError(f"Invalid customer update: {e}") from e
        self._customers[customer_id] = updated
        return updated.model_copy(deep=True)

    async def soft_delete_customer(self, customer_id: str, owner_id: str,
                                   owner_email: str) -> Optional[Customer]:
        customer = self._owned(customer_id, owner_id, owner_email)
        if customer is None:
            return None
        customer.is_active = False
        customer.updated_at = utcnow()
        return customer.model_copy(deep=True)

    async def bulk_insert_customers(self, records: list[dict[str, Any]], owner_id: str,
                                    owner_email: str) -> list[Customer]:
        batch = [self._build_customer(r, owner_id, owner_email) for r in records]
        seen: set[str] = set()
        for customer in batch:
            key = f"{owner_id}:{customer.email.lower()}"
            if key in self._email_index or key in seen:
                raise StorageError(f"Duplicate customer email: {customer.email}")
            seen.add(key)
        for customer in batch:
            self._insert_customer(customer)
        return [c.model_copy(deep=True) for c in batch]

    async def update_customer_stats(self, customer_id: str, stats: dict[str, Any]) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        if customer is None:
            return None
        customer.stats = dict(stats)
        customer.updated_at = utcnow()
        return customer.model_copy(deep=True)

    # ── Campaigns ─────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        if campaign.id in self._campaigns:
            raise StorageError(f"Duplicate campaign id: {campaign.id}")
        self._campaigns[campaign.id] = campaign.model_copy(deep=True)
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def update_campaign(self, campaign_id: str, **fields) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            return None
        try:
            updated = Campaign.model_validate({**campaign.model_dump(), **fields})
        except ValidationError as e:
            raise StorageError(f"Invalid campaign update: {e}") from e
        self._campaigns[campaign_id] = updated
        return updated.model_copy(deep=True)

    # ── Communication logs ────────────────────────────────

    async def bulk_insert_communication_logs(self, logs: list[CommunicationLog]) -> list[CommunicationLog]:
        for log in logs:
            if log.message_id in self._logs:
                raise StorageError(f"Duplicate message_id: {log.message_id}")
        for log in logs:
            self._logs[log.message_id] = log.model_copy(deep=True)
        return [log.model_copy(deep=True) for log in logs]

    async def get_communication_log(self, message_id: str) -> Optional[CommunicationLog]:
        log = self._logs.get(message_id)
        return log.model_copy(deep=True) if log else None

    async def update_communication_log_by_message_id(self, message_id: str,
                                                     expected_status: Optional[DeliveryStatus] = None,
                                                     **fields) -> Optional[CommunicationLog]:
        log = self._logs.get(message_id)
        if log is None or (expected_status is not None and log.status != expected_status):
            return None
        try:
            updated = CommunicationLog.model_validate({**log.model_dump(), **fields})
        except ValidationError as e:
            raise StorageError(f"Invalid communication log update: {e}") from e
        self._logs[message_id] = updated
        return updated.model_copy(deep=True)

    async def update_communication_logs_by_message_ids(self, message_ids: list[str], **fields) -> int:
        changed = 0
        for message_id in message_ids:
            if await self.update_communication_log_by_message_id(message_id, **fields):
                changed += 1
        return changed

    async def list_communication_logs(self, campaign_id: str) -> list[CommunicationLog]:
        return [
            log.model_copy(deep=True)
            for log in self._logs.values()
            if log.campaign_id == campaign_id
        ]

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _build_customer(data: dict[str, Any], owner_id: str, owner_email: str) -> Customer:
        try:
            customer = Customer.model_validate({
                **data,
                "created_by": owner_id,
                "created_by_email": owner_email,
            })
        except ValidationError as e:
            raise StorageError(f"Invalid customer record: {e}") from e
        customer.email = customer.email.lower()
        return customer

    def _insert_customer(self, customer: Customer) -> None:
        self._customers[customer.id] = customer.model_copy(deep=True)
        self._email_index[f"{customer.created_by}:{customer.email.lower()}"] = customer.id

    def _owned(self, customer_id: str, owner_id: str, owner_email: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        if customer is None:
            return None
        if customer.created_by != owner_id or customer.created_by_email != owner_email:
            return None
        return customer

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "users": len(self._users),
            "customers": len(self._customers),
            "campaigns": len(self._campaigns),
            "communication_logs": len(self._logs),
        }
