"""Topic names, payload schemas and the event envelope."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import Tier

TOPIC_PATTERN = re.compile(r"^[a-z0-9-]+\.[a-z0-9-]+\.[a-z0-9-]+$")
WILDCARD = "*"


class Topic(str, Enum):
    """Topics published by the service."""

    TIER_UPDATED = "billing.tier.updated"
    BALANCE_LOW = "usage.balance.low"


class TierUpdatedPayload(BaseModel):
    account_id: str = Field(alias="accountId")
    previous_tier: Optional[Tier] = Field(default=None, alias="previousTier")
    new_tier: Tier = Field(alias="newTier")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BalanceLowPayload(BaseModel):
    account_id: str = Field(alias="accountId")
    remaining: int
    threshold: int
    limit: int
    tier: Tier

    model_config = ConfigDict(populate_by_name=True, frozen=True)


TOPIC_PAYLOADS: Dict[str, Type[BaseModel]] = {
    Topic.TIER_UPDATED.value: TierUpdatedPayload,
    Topic.BALANCE_LOW.value: BalanceLowPayload,
}


def is_valid_topic(topic: str) -> bool:
    return bool(TOPIC_PATTERN.match(topic))


def namespace_of(topic: str) -> str:
    """First dot-separated segment of ``topic``."""

    return topic.split(".", 1)[0]


def known_namespaces() -> set[str]:
    return {namespace_of(topic) for topic in TOPIC_PAYLOADS}


def new_correlation_id() -> str:
    return uuid4().hex


class DomainEvent(BaseModel):
    """Envelope delivered to subscribers and across process boundaries."""

    topic: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str = Field(default_factory=new_correlation_id, alias="correlationId")
    source: str = ""
    origin: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def typed_payload(self) -> Optional[BaseModel]:
        """Validate the payload against the topic's schema, if it has one."""

        schema = TOPIC_PAYLOADS.get(self.topic)
        if schema is None:
            return None
        return schema.model_validate(self.payload)
