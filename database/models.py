"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

  - Generic JSON columns for templates, stats, tags and log metadata
  - String primary keys; message_id is the external key for receipts
  - Customer email uniqueness is scoped to the owning user.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Users
# ──────────────────────────────────────────────────────────────

class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Customers
# ──────────────────────────────────────────────────────────────

class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), default="")
    tags: Mapped[Any] = mapped_column(JSON, default=list)
    stats: Mapped[Any] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_by: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    created_by_email: Mapped[str] = mapped_column(String(320), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("created_by", "email", name="uq_customers_owner_email"),
        Index("ix_customers_owner", "created_by"),
    )


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class CampaignRow(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    segment_id: Mapped[str] = mapped_column(String(64), default="")
    message_template: Mapped[Any] = mapped_column(JSON, default=dict)
    audience_size: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    delivery_stats: Mapped[Any] = mapped_column(JSON, default=dict)
    created_by: Mapped[str] = mapped_column(String(64), default="")

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_campaigns_status", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Communication logs
# ──────────────────────────────────────────────────────────────

class CommunicationLogRow(Base):
    __tablename__ = "communication_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    message_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(Text, default="")
    body: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(32), default="pending")
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_communication_logs_campaign_status", "campaign_id", "status"),
    )
