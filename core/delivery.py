"""
Campaign Delivery Engine — Drives one campaign from pending to a terminal state.

Flow for a DELIVER_CAMPAIGN job:
  1. pending → processing, started_at recorded
  2. recipients split into fixed-size batches, input order preserved
  3. per batch: personalise, insert pending CommunicationLogs, send_bulk
       - batch raised → every log of the batch marked failed right away;
         late receipts for those logs are ignored
       - otherwise the vendor's immediate sent/failed counts are tallied
     fixed pause between batches
  4. processing → completed with DeliveryStats
  5. anything uncaught → processing → failed, failure_reason, re-raise

Campaign stats are the vendor's immediate accept/reject tallies fixed at
completion. Receipts keep updating each CommunicationLog afterwards;
recompute_stats() derives the current picture from those rows.
"""
from __future__ import annotations

import asyncio
import html
import time
import uuid
import structlog
from typing import Optional, Sequence, TypeVar

from channels.vendor import VendorBatchError, VendorSimulator
from database.store_base import BaseStore, StorageError
from models.schemas import (
    CampaignStatus,
    CommunicationLog,
    DeliveryStats,
    DeliveryStatus,
    MessageTemplate,
    OutboundEmail,
    Recipient,
    utcnow,
)

logger = structlog.get_logger()

T = TypeVar("T")

FALLBACK_NAME = "Valued Customer"


class CampaignStateError(Exception):
    """Campaign is missing or not in a state that allows delivery."""


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def create_batches(items: Sequence[T], size: int) -> list[list[T]]:
    """Consecutive slices of `size` items; the last one may be shorter."""
    if size < 1:
        raise ValueError("batch size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def generate_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def personalize(template: str, recipient: Recipient) -> str:
    name = recipient.name.strip()
    first_name = name.split()[0] if name else FALLBACK_NAME
    return (
        template
        .replace("{name}", name or FALLBACK_NAME)
        .replace("{email}", recipient.email)
        .replace("{firstName}", first_name)
    )


def render_email_html(template: MessageTemplate, recipient: Recipient) -> str:
    body = personalize(template.body, recipient)
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in body.split("\n"))
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{html.escape(personalize(template.subject, recipient))}</title>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #f8f9fa; padding: 20px; border-radius: 8px; margin-bottom: 20px; }}
        .content {{ padding: 20px 0; }}
        .footer {{ font-size: 12px; color: #666; margin-top: 30px; padding-top: 20px; border-top: 1px solid #eee; }}
    </style>
</head>
<body>
    <div class="header">
        <h2>Hi {html.escape(recipient.name.strip() or FALLBACK_NAME)}!</h2>
    </div>
    <div class="content">
        {paragraphs}
    </div>
    <div class="footer">
        <p>Best regards,<br><strong>{html.escape(template.from_name)}</strong></p>
        <p><small>This email was sent from {html.escape(template.from_email)}</small></p>
    </div>
</body>
</html>"""


# ──────────────────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────────────────

class CampaignDeliveryEngine:
    """
    Usage:
        engine = CampaignDeliveryEngine(store, vendor)
        stats = await engine.deliver(campaign_id, recipients)
    """

    def __init__(
        self,
        store: BaseStore,
        vendor: VendorSimulator,
        batch_size: int = 10,
        batch_delay: float = 1.0,
    ):
        self.store = store
        self.vendor = vendor
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def deliver(
        self,
        campaign_id: str,
        recipients: list[Recipient],
        template: Optional[MessageTemplate] = None,
    ) -> DeliveryStats:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignStateError(f"Campaign not found: {campaign_id}")
        if not campaign.can_transition(CampaignStatus.PROCESSING):
            raise CampaignStateError(
                f"Campaign {campaign_id} is {campaign.status.value}, expected pending"
            )
        template = template or campaign.message_template

        await self.store.update_campaign(
            campaign_id, status=CampaignStatus.PROCESSING, started_at=utcnow(),
        )
        logger.info("campaign_delivery_started", campaign_id=campaign_id, recipients=len(recipients))

        try:
            sent, failed = await self._deliver_batches(campaign_id, recipients, template)
            stats = DeliveryStats.from_counts(sent=sent, failed=failed, total=len(recipients))
            await self.store.update_campaign(
                campaign_id,
                status=CampaignStatus.COMPLETED,
                completed_at=utcnow(),
                delivery_stats=stats,
            )
        except Exception as e:
            logger.error("campaign_delivery_failed", campaign_id=campaign_id, error=str(e), exc_info=True)
            await self._mark_failed(campaign_id, str(e))
            raise

        logger.info("campaign_delivery_completed",
                    campaign_id=campaign_id,
                    sent=stats.sent,
                    failed=stats.failed,
                    success_rate=stats.success_rate)
        return stats

    async def recompute_stats(self, campaign_id: str) -> DeliveryStats:
        """Current stats derived from the campaign's CommunicationLog rows."""
        counts = await self.store.count_communication_logs(campaign_id)
        return DeliveryStats.from_counts(
            sent=counts.get(DeliveryStatus.SENT.value, 0),
            failed=counts.get(DeliveryStatus.FAILED.value, 0),
            total=sum(counts.values()),
        )

    # ── Internals ─────────────────────────────────────────────

    async def _deliver_batches(
        self, campaign_id: str, recipients: list[Recipient], template: MessageTemplate,
    ) -> tuple[int, int]:
        sent = failed = 0
        batches = create_batches(recipients, self.batch_size)

        for index, batch in enumerate(batches):
            logger.info("campaign_batch_started",
                        campaign_id=campaign_id, batch=index + 1, batches=len(batches), size=len(batch))

            logs = self._build_logs(campaign_id, batch, template)
            await self.store.bulk_insert_communication_logs(logs)
            emails = [
                OutboundEmail(
                    message_id=log.message_id,
                    to=recipient.email,
                    subject=log.subject,
                    html_content=render_email_html(template, recipient),
                    from_email=template.from_email,
                    campaign_id=campaign_id,
                    customer_id=recipient.id,
                )
                for log, recipient in zip(logs, batch)
            ]

            try:
                result = await self.vendor.send_bulk(emails)
            except Exception as e:
                error = VendorBatchError(index, e)
                logger.error("campaign_batch_failed",
                             campaign_id=campaign_id, batch=error.batch_index + 1, error=str(error))
                failed += len(batch)
                await self.store.update_communication_logs_by_message_ids(
                    [log.message_id for log in logs],
                    status=DeliveryStatus.FAILED,
                    failure_reason=f"Batch processing error: {error}",
                    delivered_at=utcnow(),
                )
            else:
                sent += result.sent
                failed += result.failed
                logger.info("campaign_batch_completed",
                            campaign_id=campaign_id, batch=index + 1, sent=result.sent, failed=result.failed)

            if index < len(batches) - 1:
                await asyncio.sleep(self.batch_delay)

        return sent, failed

    @staticmethod
    def _build_logs(campaign_id: str, batch: list[Recipient], template: MessageTemplate) -> list[CommunicationLog]:
        return [
            CommunicationLog(
                message_id=generate_message_id(),
                campaign_id=campaign_id,
                customer_id=recipient.id,
                recipient_email=recipient.email,
                subject=personalize(template.subject, recipient),
                body=personalize(template.body, recipient),
                status=DeliveryStatus.PENDING,
                metadata={
                    "batch_processed": True,
                    "customer_name": recipient.name,
                    "from_name": template.from_name,
                    "from_email": template.from_email,
                },
            )
            for recipient in batch
        ]

    async def _mark_failed(self, campaign_id: str, reason: str):
        try:
            await self.store.update_campaign(
                campaign_id,
                status=CampaignStatus.FAILED,
                completed_at=utcnow(),
                failure_reason=reason,
            )
        except StorageError as e:
            logger.error("campaign_fail_state_not_saved", campaign_id=campaign_id, error=str(e))
