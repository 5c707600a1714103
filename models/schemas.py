"""
Core data models for the campaign-relay pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CampaignStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed lifecycle moves; completed and failed are terminal.
CAMPAIGN_TRANSITIONS: dict[CampaignStatus, set[CampaignStatus]] = {
    CampaignStatus.PENDING: {CampaignStatus.PROCESSING},
    CampaignStatus.PROCESSING: {CampaignStatus.COMPLETED, CampaignStatus.FAILED},
    CampaignStatus.COMPLETED: set(),
    CampaignStatus.FAILED: set(),
}


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class VendorStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


# ──────────────────────────────────────────────────────────────
#  Users & customers
# ──────────────────────────────────────────────────────────────

class User(BaseModel):
    """An account that owns customers and campaigns."""
    id: str = Field(default_factory=_new_id)
    name: str = ""
    email: str


class Customer(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    email: str
    phone: str = ""
    tags: list[str] = []
    stats: dict[str, Any] = {}
    is_active: bool = True
    created_by: str = ""
    created_by_email: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def public_fields(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"created_by_email"})


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class MessageTemplate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str
    body: str = Field(alias="message")
    from_name: str = Field("", alias="fromName")
    from_email: str = Field("", alias="fromEmail")


class DeliveryStats(BaseModel):
    """Campaign-level tallies. sent + failed + pending always equals total."""
    sent: int = 0
    failed: int = 0
    pending: int = 0
    total: int = 0
    success_rate: float = 0.0

    @classmethod
    def from_counts(cls, sent: int, failed: int, total: int) -> DeliveryStats:
        rate = round(sent / total * 100, 2) if total else 0.0
        return cls(
            sent=sent, failed=failed,
            pending=max(total - sent - failed, 0),
            total=total, success_rate=rate,
        )


class Campaign(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    segment_id: str = ""
    message_template: MessageTemplate
    audience_size: int = 0
    status: CampaignStatus = CampaignStatus.PENDING
    delivery_stats: DeliveryStats = Field(default_factory=DeliveryStats)
    created_by: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def can_transition(self, target: CampaignStatus) -> bool:
        return target in CAMPAIGN_TRANSITIONS[self.status]


class CommunicationLog(BaseModel):
    """One delivery record per (campaign, recipient)."""
    id: str = Field(default_factory=_new_id)
    message_id: str
    campaign_id: str
    customer_id: str
    recipient_email: str
    subject: str = ""
    body: str = ""
    status: DeliveryStatus = DeliveryStatus.PENDING
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Vendor traffic
# ──────────────────────────────────────────────────────────────

class Recipient(BaseModel):
    """A campaign audience member as carried in the delivery job."""
    id: str
    email: str
    name: str = ""


class OutboundEmail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId", min_length=1)
    to: str = Field(min_length=1)
    subject: str
    html_content: str = Field("", alias="htmlContent")
    from_email: str = Field("", alias="from")
    campaign_id: str = Field("", alias="campaignId")
    customer_id: str = Field("", alias="customerId")


class VendorDeliveryResult(BaseModel):
    """Transient outcome of one vendor send; drives the delivery receipt."""
    message_id: str
    vendor_message_id: Optional[str] = None
    to: str = ""
    status: VendorStatus
    failure_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class DeliveryReceipt(BaseModel):
    """Webhook body posted by the vendor once a message is finally accepted or rejected."""
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    status: VendorStatus
    delivered_at: Optional[datetime] = Field(None, alias="deliveredAt")
    failure_reason: Optional[str] = Field(None, alias="failureReason")
    vendor_message_id: Optional[str] = Field(None, alias="vendorMessageId")
    recipient: str = ""
    campaign_id: str = Field("", alias="campaignId")
    customer_id: str = Field("", alias="customerId")


class ReceiptOutcome(BaseModel):
    status: str                      # "processed" | "not_found" | "ignored"
    message_id: str
    log_status: Optional[DeliveryStatus] = None
