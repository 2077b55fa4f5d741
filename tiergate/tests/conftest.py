from __future__ import annotations

from typing import List

import pytest

from tiergate.app.billing.service import WebhookIngestionService
from tiergate.app.events.relay import EventRelay, InProcessBroadcastHub
from tiergate.app.events.topics import DomainEvent
from tiergate.app.ledger.store import InMemoryLedgerStore
from tiergate.app.quota.gate import QuotaGate
from tiergate.app.quota.pricing import PricingPolicy
from tiergate.tests.factories import FIXED_NOW, FakeStripeProvider


@pytest.fixture
def ledger() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def hub() -> InProcessBroadcastHub:
    return InProcessBroadcastHub()


@pytest.fixture
def relay(hub: InProcessBroadcastHub) -> EventRelay:
    return EventRelay(hub)


@pytest.fixture
def published(relay: EventRelay) -> List[DomainEvent]:
    events: List[DomainEvent] = []
    relay.subscribe("*", events.append)
    return events


@pytest.fixture
def provider() -> FakeStripeProvider:
    return FakeStripeProvider()


@pytest.fixture
def ingestion(provider: FakeStripeProvider, ledger: InMemoryLedgerStore, relay: EventRelay) -> WebhookIngestionService:
    return WebhookIngestionService(provider=provider, ledger=ledger, relay=relay)


@pytest.fixture
def gate(ledger: InMemoryLedgerStore, relay: EventRelay) -> QuotaGate:
    return QuotaGate(ledger=ledger, relay=relay, pricing=PricingPolicy(), timeout=1.0, clock=lambda: FIXED_NOW)
