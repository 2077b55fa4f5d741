"""Hands low-balance warnings from the relay to a notifier."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .events.relay import EventRelay
from .events.topics import BalanceLowPayload, DomainEvent, Topic

logger = logging.getLogger("notifications")


class UsageNotifier(Protocol):
    """Delivers usage warnings to end users."""

    def notify_low_balance(self, warning: BalanceLowPayload) -> None:
        ...


class LoggingUsageNotifier(UsageNotifier):
    """Notifier that records usage warnings to the application logger."""

    def notify_low_balance(self, warning: BalanceLowPayload) -> None:
        logger.warning(
            "Low balance for account %s tier=%s remaining=%s threshold=%s",
            warning.account_id,
            warning.tier.value,
            warning.remaining,
            warning.threshold,
        )


@dataclass
class LowBalanceNotificationTrigger:
    relay: EventRelay
    notifier: UsageNotifier
    _subscription_id: Optional[str] = field(default=None, init=False)

    def start(self) -> None:
        if self._subscription_id is None:
            self._subscription_id = self.relay.subscribe(Topic.BALANCE_LOW.value, self._handle)

    def stop(self) -> None:
        if self._subscription_id is not None:
            self.relay.unsubscribe(self._subscription_id)
            self._subscription_id = None

    def _handle(self, event: DomainEvent) -> None:
        warning = event.typed_payload()
        if isinstance(warning, BalanceLowPayload):
            self.notifier.notify_low_balance(warning)
