"""
Campaign Consumer — Runs campaign deliveries submitted through campaign.jobs.

Jobs:
  DELIVER_CAMPAIGN → campaign.delivered / campaign.delivery.failed
"""
from __future__ import annotations

import structlog
from enum import Enum

from consumers.base import DomainConsumer, JobRoute
from core.delivery import CampaignDeliveryEngine
from database.store_base import BaseStore
from job_queue.broker import Broker, Channels, Queues
from models.jobs import CampaignJobType, DeliverCampaignPayload
from models.schemas import DeliveryStats

logger = structlog.get_logger()


class CampaignConsumer(DomainConsumer):

    queue = Queues.CAMPAIGN_JOBS
    events_channel = Channels.CAMPAIGN_EVENTS
    job_types = CampaignJobType

    def __init__(self, broker: Broker, store: BaseStore, engine: CampaignDeliveryEngine, **kwargs):
        self.engine = engine
        super().__init__(broker, store, **kwargs)

    def routes(self) -> dict[Enum, JobRoute]:
        return {
            CampaignJobType.DELIVER_CAMPAIGN: (DeliverCampaignPayload, self.deliver_campaign, "campaign.delivery.failed"),
        }

    async def deliver_campaign(self, payload: DeliverCampaignPayload) -> DeliveryStats:
        async with self.failure_event(
            "campaign.delivery.failed",
            campaignId=payload.campaign_id,
            userId=payload.user_id,
            recipients=len(payload.customers),
        ):
            await self.verify_principal(payload.user_id, payload.user_email)

            stats = await self.engine.deliver(
                payload.campaign_id, payload.customers, payload.message_content,
            )
            await self.publish("campaign.delivered", {
                "campaignId": payload.campaign_id,
                "userId": payload.user_id,
                "stats": stats.model_dump(),
            })
            return stats
