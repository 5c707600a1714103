"""
Tests for VendorSimulator.

Covers:
  - success rate convergence
  - one receipt per send, delivered to the sink
  - internal send errors still produce a FAILED receipt
  - bulk aggregation and per-email exception isolation
  - stats, drain and close
"""
import asyncio
import random
from unittest.mock import AsyncMock, patch

import pytest

from channels.vendor import FAILURE_REASONS, VendorSimulator
from models.schemas import OutboundEmail, VendorStatus


def _email(i: int = 0) -> OutboundEmail:
    return OutboundEmail(
        message_id=f"msg_{i}",
        to=f"user{i}@example.com",
        subject="Hi",
        campaign_id="camp_1",
        customer_id=f"cust_{i}",
    )


def _fast_vendor(sink=None, seed=7, **kwargs) -> VendorSimulator:
    return VendorSimulator(
        receipt_sink=sink,
        send_delay_ms=(0, 0),
        receipt_delay_ms=(0, 0),
        stagger_ms=(0, 0),
        rng=random.Random(seed),
        **kwargs,
    )


class TestSend:
    @pytest.mark.asyncio
    async def test_success_rate_converges(self):
        vendor = _fast_vendor()
        for i in range(10_000):
            await vendor.send(_email(i))
        stats = vendor.get_stats()
        assert stats["totalSent"] == 10_000
        assert 0.85 <= stats["successful"] / stats["totalSent"] <= 0.95
        assert stats["successful"] + stats["failed"] == 10_000
        await vendor.close()

    @pytest.mark.asyncio
    async def test_response_shape(self, vendor):
        result = await vendor.send(_email())
        assert result["success"] is True
        assert result["vendorMessageId"].startswith("vendor_")
        assert result["status"] in ("SENT", "FAILED")
        expected = "1-3 minutes" if result["status"] == "SENT" else "Failed"
        assert result["estimatedDelivery"] == expected

    @pytest.mark.asyncio
    async def test_every_send_produces_one_receipt(self):
        sink = AsyncMock()
        vendor = _fast_vendor(sink)
        results = [await vendor.send(_email(i)) for i in range(20)]
        await vendor.drain()

        assert sink.await_count == 20
        receipts = {call.args[0].message_id: call.args[0] for call in sink.await_args_list}
        for i, result in enumerate(results):
            receipt = receipts[f"msg_{i}"]
            assert receipt.status.value == result["status"]
            assert receipt.vendor_message_id == result["vendorMessageId"]
            assert receipt.campaign_id == "camp_1"
            if receipt.status == VendorStatus.FAILED:
                assert receipt.failure_reason in FAILURE_REASONS
            else:
                assert receipt.failure_reason is None

    @pytest.mark.asyncio
    async def test_always_failing_vendor(self):
        vendor = _fast_vendor(success_rate=0.0)
        result = await vendor.send(_email())
        assert result["status"] == "FAILED"
        assert result["estimatedDelivery"] == "Failed"
        await vendor.close()

    @pytest.mark.asyncio
    async def test_internal_error_schedules_failed_receipt(self):
        sink = AsyncMock()
        vendor = _fast_vendor(sink)
        with patch("channels.vendor.generate_vendor_message_id", side_effect=RuntimeError("id service down")):
            result = await vendor.send(_email())
        assert result == {"success": False, "error": "id service down", "status": "FAILED"}

        await vendor.drain()
        receipt = sink.await_args.args[0]
        assert receipt.status == VendorStatus.FAILED
        assert receipt.failure_reason == "Vendor API Error: id service down"
        assert receipt.vendor_message_id is None

    @pytest.mark.asyncio
    async def test_sink_errors_are_contained(self):
        sink = AsyncMock(side_effect=RuntimeError("webhook down"))
        vendor = _fast_vendor(sink)
        await vendor.send(_email())
        await vendor.drain()
        assert vendor.pending_receipts == 0


class TestBulk:
    @pytest.mark.asyncio
    async def test_bulk_aggregates(self, vendor):
        result = await vendor.send_bulk([_email(i) for i in range(10)])
        assert result.total == 10
        assert result.sent + result.failed == 10
        assert [d["messageId"] for d in result.details] == [f"msg_{i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_per_email_exception_counted_as_failed(self, vendor):
        original = vendor.send
        calls = {"n": 0}

        async def flaky(email):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("socket reset")
            return await original(email)

        vendor.send = flaky
        result = await vendor.send_bulk([_email(i) for i in range(3)])
        assert result.total == 3
        assert len(result.details) == 3
        assert result.details[1]["error"] == "socket reset"
        assert result.details[1]["status"] == "FAILED"
        assert result.sent + result.failed == 3

    @pytest.mark.asyncio
    async def test_bulk_empty(self, vendor):
        result = await vendor.send_bulk([])
        assert result.to_dict() == {"sent": 0, "failed": 0, "total": 0, "details": []}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_cancels_pending_receipts(self):
        sink = AsyncMock()
        vendor = VendorSimulator(
            receipt_sink=sink, send_delay_ms=(0, 0), receipt_delay_ms=(5000, 5000),
            stagger_ms=(0, 0), rng=random.Random(1),
        )
        await vendor.send(_email())
        assert vendor.pending_receipts == 1
        await asyncio.wait_for(vendor.close(), 1.0)
        assert vendor.pending_receipts == 0
        sink.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reset_stats(self, vendor):
        await vendor.send(_email())
        vendor.reset_stats()
        stats = vendor.get_stats()
        assert stats["totalSent"] == 0
        assert stats["successRate"] == 0
