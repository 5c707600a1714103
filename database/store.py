"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every driver or constraint failure surfaces as StorageError.
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import select, update, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import CampaignRow, CommunicationLogRow, CustomerRow, UserRow
from database.session import create_engine, create_session_factory, init_db, session_scope
from database.store_base import BaseStore, StorageError
from models.schemas import Campaign, CommunicationLog, Customer, DeliveryStatus, User, utcnow

logger = structlog.get_logger()

_CUSTOMER_MUTABLE = {"name", "phone", "tags", "stats", "is_active"}


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Map model-level field values onto column values."""
    values = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        values["metadata_" if key == "metadata" else key] = value
    return values


def _json(value: Any, default: Any) -> Any:
    # SQLite may hand JSON columns back as text
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db_url: str, echo: bool = False):
        self.db_url = db_url
        self.echo = echo
        self._engine = None
        self._factory = None

    async def connect(self) -> None:
        self._engine = create_engine(self.db_url, echo=self.echo)
        self._factory = create_session_factory(self._engine)
        try:
            await init_db(self._engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Database initialisation failed: {e}") from e

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._factory = None
            logger.info("database_closed")

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._factory is None:
            raise StorageError("SQL store is not connected")
        try:
            async with session_scope(self._factory) as db:
                yield db
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    # ── Users ──────────────────────────────────────────────

    async def find_user(self, user_id: str) -> Optional[User]:
        async with self._session() as db:
            row = await db.get(UserRow, user_id)
            return User(id=row.id, name=row.name, email=row.email) if row else None

    async def create_user(self, user: User) -> User:
        async with self._session() as db:
            db.add(UserRow(id=user.id, name=user.name, email=user.email))
        return user

    # ── Customers ──────────────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        async with self._session() as db:
            row = await db.get(CustomerRow, customer_id)
            return self._row_to_customer(row) if row else None

    async def find_customer_by_email(self, email: str, owner_id: str) -> Optional[Customer]:
        async with self._session() as db:
            stmt = select(CustomerRow).where(and_(
                CustomerRow.email == email.lower(),
                CustomerRow.created_by == owner_id,
            ))
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_customer(row) if row else None

    async def create_customer(self, data: dict[str, Any], owner_id: str, owner_email: str) -> Customer:
        customer = self._build_customer(data, owner_id, owner_email)
        async with self._session() as db:
            db.add(self._customer_to_row(customer))
        return customer

    async def update_customer(self, customer_id: str, owner_id: str, owner_email: str,
                              updates: dict[str, Any]) -> Optional[Customer]:
        async with self._session() as db:
            row = await self._owned(db, customer_id, owner_id, owner_email)
            if row is None:
                return None
            for key, value in updates.items():
                if key in _CUSTOMER_MUTABLE:
                    setattr(row, key, value)
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_customer(row)

    async def soft_delete_customer(self, customer_id: str, owner_id: str,
                                   owner_email: str) -> Optional[Customer]:
        async with self._session() as db:
            row = await self._owned(db, customer_id, owner_id, owner_email)
            if row is None:
                return None
            row.is_active = False
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_customer(row)

    async def bulk_insert_customers(self, records: list[dict[str, Any]], owner_id: str,
                                    owner_email: str) -> list[Customer]:
        batch = [self._build_customer(r, owner_id, owner_email) for r in records]
        async with self._session() as db:
            db.add_all([self._customer_to_row(c) for c in batch])
        return batch

    async def update_customer_stats(self, customer_id: str, stats: dict[str, Any]) -> Optional[Customer]:
        async with self._session() as db:
            row = await db.get(CustomerRow, customer_id)
            if row is None:
                return None
            row.stats = dict(stats)
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_customer(row)

    # ── Campaigns ──────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        async with self._session() as db:
            db.add(CampaignRow(
                id=campaign.id,
                name=campaign.name,
                segment_id=campaign.segment_id,
                message_template=campaign.message_template.model_dump(mode="json"),
                audience_size=campaign.audience_size,
                status=campaign.status.value,
                delivery_stats=campaign.delivery_stats.model_dump(mode="json"),
                created_by=campaign.created_by,
                started_at=campaign.started_at,
                completed_at=campaign.completed_at,
                failure_reason=campaign.failure_reason,
            ))
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with self._session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return self._row_to_campaign(row) if row else None

    async def update_campaign(self, campaign_id: str, **fields) -> Optional[Campaign]:
        async with self._session() as db:
            row = await db.get(CampaignRow, campaign_id)
            if row is None:
                return None
            for key, value in _column_values(fields).items():
                setattr(row, key, value)
            await db.flush()
            return self._row_to_campaign(row)

    # ── Communication logs ─────────────────────────────────

    async def bulk_insert_communication_logs(self, logs: list[CommunicationLog]) -> list[CommunicationLog]:
        async with self._session() as db:
            db.add_all([
                CommunicationLogRow(
                    id=log.id,
                    message_id=log.message_id,
                    campaign_id=log.campaign_id,
                    customer_id=log.customer_id,
                    recipient_email=log.recipient_email,
                    subject=log.subject,
                    body=log.body,
                    status=log.status.value,
                    delivered_at=log.delivered_at,
                    failure_reason=log.failure_reason,
                    metadata_=log.metadata,
                    created_at=log.created_at,
                )
                for log in logs
            ])
        return logs

    async def get_communication_log(self, message_id: str) -> Optional[CommunicationLog]:
        async with self._session() as db:
            row = await self._log_row(db, message_id)
            return self._row_to_log(row) if row else None

    async def update_communication_log_by_message_id(self, message_id: str,
                                                     expected_status: Optional[DeliveryStatus] = None,
                                                     **fields) -> Optional[CommunicationLog]:
        async with self._session() as db:
            row = await self._log_row(db, message_id, lock=expected_status is not None)
            if row is None:
                return None
            if expected_status is not None and row.status != expected_status.value:
                return None
            for key, value in _column_values(fields).items():
                setattr(row, key, value)
            await db.flush()
            return self._row_to_log(row)

    async def update_communication_logs_by_message_ids(self, message_ids: list[str], **fields) -> int:
        if not message_ids:
            return 0
        async with self._session() as db:
            stmt = (
                update(CommunicationLogRow)
                .where(CommunicationLogRow.message_id.in_(message_ids))
                .values(**_column_values(fields))
            )
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def list_communication_logs(self, campaign_id: str) -> list[CommunicationLog]:
        async with self._session() as db:
            stmt = (
                select(CommunicationLogRow)
                .where(CommunicationLogRow.campaign_id == campaign_id)
                .order_by(CommunicationLogRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_log(r) for r in result.scalars().all()]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    async def _owned(db: AsyncSession, customer_id: str, owner_id: str,
                     owner_email: str) -> Optional[CustomerRow]:
        stmt = select(CustomerRow).where(and_(
            CustomerRow.id == customer_id,
            CustomerRow.created_by == owner_id,
            CustomerRow.created_by_email == owner_email,
        ))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _log_row(db: AsyncSession, message_id: str, lock: bool = False) -> Optional[CommunicationLogRow]:
        stmt = select(CommunicationLogRow).where(CommunicationLogRow.message_id == message_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

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

    @staticmethod
    def _customer_to_row(customer: Customer) -> CustomerRow:
        return CustomerRow(
            id=customer.id, name=customer.name, email=customer.email,
            phone=customer.phone, tags=customer.tags, stats=customer.stats,
            is_active=customer.is_active,
            created_by=customer.created_by, created_by_email=customer.created_by_email,
            created_at=customer.created_at, updated_at=customer.updated_at,
        )

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_customer(row: CustomerRow) -> Customer:
        return Customer(
            id=row.id, name=row.name, email=row.email, phone=row.phone or "",
            tags=_json(row.tags, []), stats=_json(row.stats, {}),
            is_active=row.is_active,
            created_by=row.created_by, created_by_email=row.created_by_email,
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_campaign(row: CampaignRow) -> Campaign:
        return Campaign.model_validate({
            "id": row.id, "name": row.name, "segment_id": row.segment_id,
            "message_template": _json(row.message_template, {}),
            "audience_size": row.audience_size, "status": row.status,
            "delivery_stats": _json(row.delivery_stats, {}),
            "created_by": row.created_by,
            "started_at": row.started_at, "completed_at": row.completed_at,
            "failure_reason": row.failure_reason,
        })

    @staticmethod
    def _row_to_log(row: CommunicationLogRow) -> CommunicationLog:
        return CommunicationLog(
            id=row.id, message_id=row.message_id,
            campaign_id=row.campaign_id, customer_id=row.customer_id,
            recipient_email=row.recipient_email,
            subject=row.subject or "", body=row.body or "",
            status=row.status, delivered_at=row.delivered_at,
            failure_reason=row.failure_reason,
            metadata=_json(row.metadata_, {}),
            created_at=row.created_at,
        )
