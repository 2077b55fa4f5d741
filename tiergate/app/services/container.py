"""Application wiring for ledger, ingestion, quota and relay components."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request

from ...config import Settings
from ..billing.provider import PaymentProvider, StripePaymentProvider
from ..billing.service import WebhookIngestionService
from ..billing.tiers import TierMapper
from ..events.relay import BroadcastTransport, EventRelay, InProcessBroadcastHub
from ..ledger.store import InMemoryLedgerStore, LedgerStore
from ..notifications import LoggingUsageNotifier, LowBalanceNotificationTrigger, UsageNotifier
from ..quota.gate import QuotaGate
from ..quota.pricing import PricingPolicy

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Explicitly constructed components shared by request handlers.

    Created at application startup, stored on ``app.state`` and closed at
    shutdown.
    """

    settings: Settings
    ledger: LedgerStore
    relay: EventRelay
    provider: PaymentProvider
    ingestion: WebhookIngestionService
    quota: QuotaGate
    low_balance_trigger: LowBalanceNotificationTrigger
    _closed: bool = field(default=False, repr=False)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.low_balance_trigger.stop()
        await self.relay.close()
        await self.ledger.close()
        logger.info("Service container closed")


def assemble_container(
    settings: Settings,
    *,
    ledger: LedgerStore,
    transport: Optional[BroadcastTransport] = None,
    provider: Optional[PaymentProvider] = None,
    notifier: Optional[UsageNotifier] = None,
) -> ServiceContainer:
    """Wire components around an already connected ledger and transport."""

    relay = EventRelay(transport if transport is not None else InProcessBroadcastHub())
    provider = provider or StripePaymentProvider(
        webhook_secret=settings.stripe_webhook_secret,
        api_key=settings.stripe_secret_key,
        tolerance=settings.stripe_webhook_tolerance,
    )
    pricing = PricingPolicy.from_config(
        meter_costs=settings.meter_costs,
        tier_limits=settings.tier_limits,
        low_balance_floor=settings.low_balance_floor,
        low_balance_ratio=settings.low_balance_ratio,
    )
    ingestion = WebhookIngestionService(
        provider=provider,
        ledger=ledger,
        relay=relay,
        tier_mapper=TierMapper.from_config(settings.price_tier_map),
    )
    quota = QuotaGate(
        ledger=ledger,
        relay=relay,
        pricing=pricing,
        timeout=settings.ledger_timeout_seconds,
    )
    trigger = LowBalanceNotificationTrigger(relay=relay, notifier=notifier or LoggingUsageNotifier())
    trigger.start()
    return ServiceContainer(
        settings=settings,
        ledger=ledger,
        relay=relay,
        provider=provider,
        ingestion=ingestion,
        quota=quota,
        low_balance_trigger=trigger,
    )


async def build_container(settings: Settings) -> ServiceContainer:
    """Connect the configured backends and assemble the container."""

    ledger: LedgerStore
    if settings.ledger_backend == "memory":
        logger.warning("Using in-memory ledger; usage and entitlements are not persisted")
        ledger = InMemoryLedgerStore()
    else:
        from ..ledger.repository import PostgresLedgerStore

        ledger = await PostgresLedgerStore.connect(
            settings.db_config,
            connect_timeout=settings.db_connect_timeout,
        )

    transport: Optional[BroadcastTransport] = None
    if settings.relay_transport == "postgres":
        from ..events.postgres import PostgresNotifyTransport

        transport = await PostgresNotifyTransport.connect(
            settings.db_config,
            connect_timeout=settings.db_connect_timeout,
        )

    return assemble_container(settings, ledger=ledger, transport=transport)


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container attached at startup."""

    return request.app.state.container
