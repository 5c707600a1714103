"""Shared test fixtures for campaign-relay."""
import random

import pytest
import pytest_asyncio

from channels.vendor import VendorSimulator
from database.store_memory import InMemoryStore
from job_queue.broker import InMemoryBroker
from models.schemas import Campaign, MessageTemplate, Recipient, User


@pytest_asyncio.fixture
async def broker():
    """Connected in-memory broker, closed after the test."""
    b = InMemoryBroker()
    await b.connect()
    yield b
    await b.close()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def owner() -> User:
    return User(id="u_owner_001", name="Asha Rao", email="asha@example.com")


@pytest_asyncio.fixture
async def seeded_store(store, owner) -> InMemoryStore:
    await store.create_user(owner)
    return store


@pytest.fixture
def template() -> MessageTemplate:
    return MessageTemplate(
        subject="Hello {firstName}",
        message="Dear {name},\nYour account {email} has a new offer.",
        fromName="Acme Store",
        fromEmail="offers@acme.test",
    )


@pytest.fixture
def campaign(template, owner) -> Campaign:
    return Campaign(id="camp_001", name="Spring sale", message_template=template, created_by=owner.id)


def make_recipients(count: int) -> list[Recipient]:
    return [
        Recipient(id=f"cust_{i:03d}", email=f"user{i}@example.com", name=f"User {i}")
        for i in range(count)
    ]


@pytest.fixture
def recipients() -> list[Recipient]:
    return make_recipients(25)


@pytest.fixture
def make_audience():
    return make_recipients


@pytest_asyncio.fixture
async def vendor():
    """Vendor with no simulated latency and a fixed seed."""
    v = VendorSimulator(
        send_delay_ms=(0, 0),
        receipt_delay_ms=(0, 0),
        stagger_ms=(0, 0),
        rng=random.Random(1234),
    )
    yield v
    await v.close()


class EventRecorder:
    """Collects events delivered on a channel."""

    def __init__(self):
        self.events: list[dict] = []

    async def __call__(self, event: dict):
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e.get("type") == event_type]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
