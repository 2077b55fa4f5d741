"""Event relay propagating tier and usage changes."""

from .relay import BroadcastTransport, EventRelay, InProcessBroadcastHub
from .topics import (
    BalanceLowPayload,
    DomainEvent,
    TierUpdatedPayload,
    Topic,
)

__all__ = [
    "BalanceLowPayload",
    "BroadcastTransport",
    "DomainEvent",
    "EventRelay",
    "InProcessBroadcastHub",
    "TierUpdatedPayload",
    "Topic",
]
