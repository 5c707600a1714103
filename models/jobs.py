"""
Job payload variants.

Each queue accepts a closed set of job types. Every type maps to exactly one
payload model, so a consumer's dispatch table can be checked for coverage
against the enum when it is built.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.schemas import MessageTemplate, Recipient


class CustomerJobType(str, Enum):
    CREATE_CUSTOMER = "CREATE_CUSTOMER"
    UPDATE_CUSTOMER = "UPDATE_CUSTOMER"
    DELETE_CUSTOMER = "DELETE_CUSTOMER"
    BULK_IMPORT_CUSTOMERS = "BULK_IMPORT_CUSTOMERS"
    UPDATE_CUSTOMER_STATS = "UPDATE_CUSTOMER_STATS"


class CampaignJobType(str, Enum):
    DELIVER_CAMPAIGN = "DELIVER_CAMPAIGN"


class JobPayload(BaseModel):
    """Common envelope: every job names the principal that submitted it."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    user_email: str = Field(alias="userEmail")


class CreateCustomerPayload(JobPayload):
    customer_data: dict[str, Any] = Field(alias="customerData")


class UpdateCustomerPayload(JobPayload):
    customer_id: str = Field(alias="customerId")
    update_data: dict[str, Any] = Field(default_factory=dict, alias="updateData")


class DeleteCustomerPayload(JobPayload):
    customer_id: str = Field(alias="customerId")


class BulkImportCustomersPayload(JobPayload):
    customers: list[dict[str, Any]] = []


class UpdateCustomerStatsPayload(JobPayload):
    customer_id: str = Field(alias="customerId")
    stats: dict[str, Any] = {}


class DeliverCampaignPayload(JobPayload):
    campaign_id: str = Field(alias="campaignId")
    customers: list[Recipient] = []
    message_content: Optional[MessageTemplate] = Field(None, alias="messageContent")
