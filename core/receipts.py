"""
Delivery Receipts — Applies a vendor's final outcome to its CommunicationLog.

Called by the vendor simulator's receipt tasks and by the HTTP webhook.
Receipts may arrive in any order relative to each other and to the
send_bulk call that produced them; each one only touches its own log row.
A log is finalised once: a receipt for a log that is no longer pending
(already receipted, or failed with its whole batch) is ignored.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseStore
from models.schemas import DeliveryReceipt, DeliveryStatus, ReceiptOutcome, VendorStatus, utcnow

logger = structlog.get_logger()


class DeliveryReceiptHandler:

    def __init__(self, store: BaseStore):
        self.store = store
        self.processed = 0
        self.not_found = 0
        self.ignored = 0

    async def handle(self, receipt: DeliveryReceipt) -> ReceiptOutcome:
        log = await self.store.get_communication_log(receipt.message_id)
        if log is None:
            self.not_found += 1
            logger.warning("receipt_log_not_found", message_id=receipt.message_id)
            return ReceiptOutcome(status="not_found", message_id=receipt.message_id)

        if log.status != DeliveryStatus.PENDING:
            return self._ignore(receipt, log.status)

        status = DeliveryStatus(receipt.status.value.lower())
        delivered_at = None
        if receipt.status == VendorStatus.SENT:
            delivered_at = receipt.delivered_at or utcnow()

        updated = await self.store.update_communication_log_by_message_id(
            receipt.message_id,
            expected_status=DeliveryStatus.PENDING,
            status=status,
            delivered_at=delivered_at,
            failure_reason=receipt.failure_reason,
            metadata={
                **log.metadata,
                "vendor_message_id": receipt.vendor_message_id,
                "receipt_received_at": utcnow().isoformat(),
                "vendor_webhook": True,
            },
        )
        if updated is None:
            # Finalised between lookup and update
            return self._ignore(receipt, None)

        self.processed += 1
        logger.info("delivery_receipt_processed", message_id=receipt.message_id, status=status.value)
        return ReceiptOutcome(status="processed", message_id=receipt.message_id, log_status=status)

    def _ignore(self, receipt: DeliveryReceipt, current: Optional[DeliveryStatus]) -> ReceiptOutcome:
        self.ignored += 1
        logger.info("delivery_receipt_ignored",
                    message_id=receipt.message_id,
                    receipt_status=receipt.status.value,
                    log_status=current.value if current else None)
        return ReceiptOutcome(status="ignored", message_id=receipt.message_id, log_status=current)
