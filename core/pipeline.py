"""
Pipeline — Builds and owns every long-lived component of the process.

Wiring:
  broker ──▶ CustomerConsumer (customer.jobs, customer.events)
         └─▶ CampaignConsumer (campaign.jobs) ──▶ CampaignDeliveryEngine
                                                    │ send_bulk
                                                    ▼
                                     VendorSimulator ──receipt──▶ DeliveryReceiptHandler
  MonitoringService reads broker, vendor and consumer state.

Shutdown order: consumers (in-flight jobs finish) → vendor receipts
cancelled → broker → store.
"""
from __future__ import annotations

import random
import structlog
from typing import Optional

from channels.vendor import VendorSimulator
from config.settings import Settings
from consumers.campaign import CampaignConsumer
from consumers.customer import CustomerConsumer
from core.delivery import CampaignDeliveryEngine
from core.monitoring import MonitoringService
from core.receipts import DeliveryReceiptHandler
from database.store_base import BaseStore
from database.store_factory import create_store
from job_queue.broker import Broker, create_broker

logger = structlog.get_logger()


class Pipeline:
    """
    Usage:
        pipeline = Pipeline(get_settings())
        await pipeline.start()
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        settings: Settings,
        broker: Optional[Broker] = None,
        store: Optional[BaseStore] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.broker = broker or create_broker({
            "backend": settings.broker.backend,
            "redis_url": settings.broker.redis_url,
        })
        self.store = store or create_store({
            "store_backend": settings.database.store_backend,
            "url": settings.database.url,
            "echo": settings.debug,
        })

        self.receipts = DeliveryReceiptHandler(self.store)
        self.vendor = VendorSimulator(
            receipt_sink=self.receipts.handle,
            success_rate=settings.vendor.success_rate,
            send_delay_ms=settings.vendor.send_delay_ms,
            receipt_delay_ms=settings.vendor.receipt_delay_ms,
            stagger_ms=settings.vendor.stagger_ms,
            rng=rng,
        )
        self.engine = CampaignDeliveryEngine(
            self.store, self.vendor,
            batch_size=settings.delivery.batch_size,
            batch_delay=settings.delivery.batch_delay_seconds,
        )

        loop_options = {
            "poll_timeout": settings.broker.poll_timeout_seconds,
            "error_backoff": settings.broker.error_backoff_seconds,
        }
        self.customers = CustomerConsumer(
            self.broker, self.store,
            import_batch_size=settings.customers.import_batch_size,
            **loop_options,
        )
        self.campaigns = CampaignConsumer(self.broker, self.store, self.engine, **loop_options)

        self.monitoring = MonitoringService(
            self.broker,
            settings.broker.monitored_queues,
            vendor=self.vendor,
            consumers={"customer": self.customers, "campaign": self.campaigns},
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self):
        if self._started:
            return
        await self.store.connect()
        await self.broker.connect()
        await self.customers.start()
        await self.campaigns.start()
        self._started = True
        logger.info("pipeline_started",
                    broker=self.settings.broker.backend,
                    store=self.settings.database.store_backend)

    async def stop(self):
        if not self._started:
            return
        await self.customers.stop()
        await self.campaigns.stop()
        await self.vendor.close()
        await self.broker.close()
        await self.store.close()
        self._started = False
        logger.info("pipeline_stopped")
