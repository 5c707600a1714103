"""
Vendor Simulator — Stand-in for an unreliable third-party email provider.

Provides:
- Probabilistic per-email outcome (SENT with `success_rate`, otherwise FAILED
  with one of ten realistic failure reasons)
- Simulated network latency per send and stagger between bulk sends
- Asynchronous delivery receipts: every send schedules exactly one receipt
  callback a short random delay later, delivered to the configured sink
- Running send statistics

Receipt tasks are tracked, so shutdown can either drain() them or close()
and cancel whatever is still pending.
"""
from __future__ import annotations

import asyncio
import random
import time
import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from models.schemas import DeliveryReceipt, OutboundEmail, VendorDeliveryResult, VendorStatus

logger = structlog.get_logger()

ReceiptSink = Callable[[DeliveryReceipt], Awaitable[Any]]

FAILURE_REASONS = (
    "Recipient mailbox full",
    "Invalid email address",
    "Spam filter rejection",
    "Temporary server error",
    "Recipient domain not found",
    "Message too large",
    "Bounce - user unknown",
    "Rate limit exceeded",
    "Content policy violation",
    "Temporary network error",
)

ERROR_RECEIPT_DELAY_MS = 100


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class VendorError(Exception):
    """Base exception for vendor operations."""


class VendorBatchError(VendorError):
    """A whole bulk send raised instead of returning per-email outcomes."""

    def __init__(self, batch_index: int, cause: BaseException):
        self.batch_index = batch_index
        self.cause = cause
        super().__init__(str(cause))


# ══════════════════════════════════════════════════════════════
#  BULK RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class BulkSendResult:
    total: int
    sent: int = 0
    failed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
            "details": self.details,
        }


def generate_vendor_message_id() -> str:
    return f"vendor_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


# ══════════════════════════════════════════════════════════════
#  SIMULATOR
# ══════════════════════════════════════════════════════════════

class VendorSimulator:
    """
    Simulated email vendor.

    Usage:
        vendor = VendorSimulator(receipt_sink=receipts.handle)
        result = await vendor.send(email)
        bulk = await vendor.send_bulk(emails)
        await vendor.drain()     # wait for outstanding receipts
        await vendor.close()     # or cancel them
    """

    def __init__(
        self,
        receipt_sink: Optional[ReceiptSink] = None,
        success_rate: float = 0.9,
        send_delay_ms: tuple[int, int] = (50, 200),
        receipt_delay_ms: tuple[int, int] = (100, 500),
        stagger_ms: tuple[int, int] = (10, 50),
        rng: Optional[random.Random] = None,
    ):
        self.receipt_sink = receipt_sink
        self.success_rate = success_rate
        self.send_delay_ms = send_delay_ms
        self.receipt_delay_ms = receipt_delay_ms
        self.stagger_ms = stagger_ms
        self._rng = rng or random.Random()
        self._pending: set[asyncio.Task] = set()
        self._reset_counters()

    # ── Send ──────────────────────────────────────────────────

    async def send(self, email: OutboundEmail) -> dict[str, Any]:
        """
        Submit one email. Returns the vendor's immediate response; the final
        outcome arrives later as a delivery receipt.
        """
        try:
            await self._sleep(self.send_delay_ms)
            is_success = self._rng.random() < self.success_rate
            result = VendorDeliveryResult(
                message_id=email.message_id,
                vendor_message_id=generate_vendor_message_id(),
                to=email.to,
                status=VendorStatus.SENT if is_success else VendorStatus.FAILED,
                failure_reason=None if is_success else self._rng.choice(FAILURE_REASONS),
            )
            self._record(is_success)
            self._schedule_receipt(result, email, self._delay_ms(self.receipt_delay_ms))

            logger.info("vendor_email_sent",
                        to=email.to,
                        message_id=email.message_id,
                        vendor_message_id=result.vendor_message_id,
                        status=result.status.value)
            return {
                "success": True,
                "vendorMessageId": result.vendor_message_id,
                "status": result.status.value,
                "estimatedDelivery": "1-3 minutes" if is_success else "Failed",
            }

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("vendor_api_error", to=email.to, message_id=email.message_id, error=str(e))
            failed = VendorDeliveryResult(
                message_id=email.message_id,
                to=email.to,
                status=VendorStatus.FAILED,
                failure_reason=f"Vendor API Error: {e}",
            )
            self._schedule_receipt(failed, email, ERROR_RECEIPT_DELAY_MS)
            return {"success": False, "error": str(e), "status": VendorStatus.FAILED.value}

    async def send_bulk(self, emails: list[OutboundEmail]) -> BulkSendResult:
        """Send a batch sequentially with a small stagger between emails."""
        result = BulkSendResult(total=len(emails))
        logger.info("vendor_bulk_started", batch_size=len(emails))

        for i, email in enumerate(emails):
            try:
                response = await self.send(email)
                if response.get("success") and response.get("status") == VendorStatus.SENT.value:
                    result.sent += 1
                else:
                    result.failed += 1
                result.details.append({
                    "to": email.to,
                    "messageId": email.message_id,
                    "vendorMessageId": response.get("vendorMessageId"),
                    "status": response.get("status"),
                })
                if i < len(emails) - 1:
                    await self._sleep(self.stagger_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result.failed += 1
                result.details.append({
                    "to": email.to,
                    "messageId": email.message_id,
                    "status": VendorStatus.FAILED.value,
                    "error": str(e),
                })

        logger.info("vendor_bulk_completed", sent=result.sent, failed=result.failed, total=result.total)
        return result

    # ── Receipts ──────────────────────────────────────────────

    def _schedule_receipt(self, result: VendorDeliveryResult, email: OutboundEmail, delay_ms: int):
        receipt = DeliveryReceipt(
            message_id=result.message_id,
            status=result.status,
            delivered_at=result.timestamp,
            failure_reason=result.failure_reason,
            vendor_message_id=result.vendor_message_id,
            recipient=result.to,
            campaign_id=email.campaign_id,
            customer_id=email.customer_id,
        )
        task = asyncio.create_task(self._deliver_receipt(receipt, delay_ms),
                                   name=f"receipt:{result.message_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver_receipt(self, receipt: DeliveryReceipt, delay_ms: int):
        await asyncio.sleep(delay_ms / 1000)
        if self.receipt_sink is None:
            logger.debug("receipt_dropped_no_sink", message_id=receipt.message_id)
            return
        try:
            await self.receipt_sink(receipt)
            logger.info("delivery_receipt_sent",
                        message_id=receipt.message_id,
                        status=receipt.status.value)
        except Exception as e:
            logger.error("delivery_receipt_failed", message_id=receipt.message_id, error=str(e))

    @property
    def pending_receipts(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for every scheduled receipt to be delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self):
        """Cancel receipts that have not fired yet."""
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("vendor_receipts_cancelled", count=len(pending))

    # ── Stats ─────────────────────────────────────────────────

    def _reset_counters(self):
        self._total_sent = 0
        self._successful = 0
        self._failed = 0

    def _record(self, is_success: bool):
        self._total_sent += 1
        if is_success:
            self._successful += 1
        else:
            self._failed += 1

    def get_stats(self) -> dict[str, Any]:
        rate = round(self._successful / self._total_sent * 100, 2) if self._total_sent else 0
        return {
            "totalSent": self._total_sent,
            "successful": self._successful,
            "failed": self._failed,
            "successRate": rate,
            "pendingReceipts": self.pending_receipts,
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }

    def reset_stats(self):
        self._reset_counters()

    # ── Timing ────────────────────────────────────────────────

    def _delay_ms(self, bounds: tuple[int, int]) -> int:
        low, high = bounds
        return self._rng.randint(low, high) if high > low else low

    async def _sleep(self, bounds: tuple[int, int]):
        await asyncio.sleep(self._delay_ms(bounds) / 1000)
