"""Domain models for subscription billing and tier entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Tier(str, Enum):
    """Product tiers an account can be entitled to."""

    FREE = "free"
    LITE = "lite"
    FULL = "full"


class SubscriptionStatus(str, Enum):
    """Local view of the provider subscription lifecycle."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"


class ProviderEventType(str, Enum):
    """Provider webhook event types that the state machine reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class RejectionReason(str, Enum):
    """Reasons a webhook delivery is not applied."""

    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    UNKNOWN_PRICE = "UNKNOWN_PRICE"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"


class BillingEventOutcome(str, Enum):
    """How the state machine disposed of a provider event."""

    APPLIED = "applied"
    IGNORED = "ignored"
    AUDIT_ONLY = "audit_only"


TIER_CHANGE_SOURCE = "billing-webhook"


class Entitlement(BaseModel):
    """Authoritative tier and subscription state for one account."""

    account_id: str
    tier: Tier = Tier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    billing_customer_ref: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class TierChangeRecord(BaseModel):
    """Append-only audit entry written with every accepted entitlement update."""

    account_id: str
    previous_tier: Optional[Tier] = None
    new_tier: Tier
    source: str = TIER_CHANGE_SOURCE
    event_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class BillingEventRecord(BaseModel):
    """Best-effort audit entry for provider events the service acted on or skipped."""

    provider_event_id: str
    event_type: str
    outcome: BillingEventOutcome
    account_id: Optional[str] = None
    detail: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class ProviderEvent(BaseModel):
    """Minimal envelope of a verified provider webhook event."""

    event_id: str = Field(alias="id")
    event_type: str = Field(alias="type")
    created: Optional[int] = None
    data: Dict[str, Any]

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("data")
    @classmethod
    def _require_object(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(value.get("object"), dict):
            raise ValueError("event data must carry an object")
        return value

    @property
    def data_object(self) -> Dict[str, Any]:
        return self.data["object"]


class Accepted(BaseModel):
    """Webhook event verified and either applied or deliberately ignored."""

    event_id: Optional[str] = None
    event_type: Optional[str] = None
    account_id: Optional[str] = None
    previous_tier: Optional[Tier] = None
    new_tier: Optional[Tier] = None
    applied: bool = False

    model_config = ConfigDict(frozen=True)


class Rejected(BaseModel):
    """Webhook event that was not applied, with the reason."""

    reason: RejectionReason
    message: str = ""
    event_id: Optional[str] = None
    event_type: Optional[str] = None

    model_config = ConfigDict(frozen=True)


IngestionResult = Union[Accepted, Rejected]
