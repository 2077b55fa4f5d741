"""Billing domain package mapping provider subscriptions onto product tiers."""

from .models import (
    Accepted,
    BillingEventOutcome,
    BillingEventRecord,
    Entitlement,
    IngestionResult,
    ProviderEvent,
    ProviderEventType,
    Rejected,
    RejectionReason,
    SubscriptionStatus,
    Tier,
    TierChangeRecord,
)
from .tiers import PRICE_TO_TIER, TierMapper, map_price_to_tier

__all__ = [
    "Accepted",
    "BillingEventOutcome",
    "BillingEventRecord",
    "Entitlement",
    "IngestionResult",
    "PRICE_TO_TIER",
    "ProviderEvent",
    "ProviderEventType",
    "Rejected",
    "RejectionReason",
    "SubscriptionStatus",
    "Tier",
    "TierChangeRecord",
    "TierMapper",
    "map_price_to_tier",
]
