"""
Abstract Store — Interface for all persistence backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

Every operation fails with StorageError; handlers let it propagate so the
job lands on the dead-letter queue.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Campaign, CommunicationLog, Customer, DeliveryStatus, User


class StorageError(Exception):
    """Raised for any persistence failure (constraint, validation, driver)."""


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    async def connect(self) -> None:
        """Prepare the backend. No-op unless overridden."""

    async def close(self) -> None:
        """Release backend resources. No-op unless overridden."""

    # ── Users ─────────────────────────────────────────────────

    @abstractmethod
    async def find_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def create_user(self, user: User) -> User:
        ...

    # ── Customers ─────────────────────────────────────────────

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def find_customer_by_email(self, email: str, owner_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def create_customer(self, data: dict[str, Any], owner_id: str, owner_email: str) -> Customer:
        ...

    @abstractmethod
    async def update_customer(self, customer_id: str, owner_id: str, owner_email: str,
                              updates: dict[str, Any]) -> Optional[Customer]:
        """Apply `updates` to a customer owned by the given user. None if no match."""
        ...

    @abstractmethod
    async def soft_delete_customer(self, customer_id: str, owner_id: str,
                                   owner_email: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def bulk_insert_customers(self, records: list[dict[str, Any]], owner_id: str,
                                    owner_email: str) -> list[Customer]:
        """Insert all records or none of them."""
        ...

    @abstractmethod
    async def update_customer_stats(self, customer_id: str, stats: dict[str, Any]) -> Optional[Customer]:
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def create_campaign(self, campaign: Campaign) -> Campaign:
        ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def update_campaign(self, campaign_id: str, **fields) -> Optional[Campaign]:
        ...

    # ── Communication logs ────────────────────────────────────

    @abstractmethod
    async def bulk_insert_communication_logs(self, logs: list[CommunicationLog]) -> list[CommunicationLog]:
        ...

    @abstractmethod
    async def get_communication_log(self, message_id: str) -> Optional[CommunicationLog]:
        ...

    @abstractmethod
    async def update_communication_log_by_message_id(self, message_id: str,
                                                     expected_status: Optional[DeliveryStatus] = None,
                                                     **fields) -> Optional[CommunicationLog]:
        """
        Update one log. With `expected_status`, the update only applies while
        the log is still in that status. None when nothing was changed.
        """
        ...

    @abstractmethod
    async def update_communication_logs_by_message_ids(self, message_ids: list[str], **fields) -> int:
        """Update every matching log. Returns the number of rows changed."""
        ...

    @abstractmethod
    async def list_communication_logs(self, campaign_id: str) -> list[CommunicationLog]:
        ...

    async def count_communication_logs(self, campaign_id: str) -> dict[str, int]:
        """Log counts per delivery status for one campaign."""
        counts: dict[str, int] = {}
        for log in await self.list_communication_logs(campaign_id):
            counts[log.status.value] = counts.get(log.status.value, 0) + 1
        return counts
