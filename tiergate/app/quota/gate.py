"""Quota enforcement for metered operations."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar, Union

from ..billing.models import Tier
from ..events.relay import EventRelay
from ..events.topics import BalanceLowPayload, Topic
from ..ledger.models import period_key_for, reset_at_for
from ..ledger.store import LedgerStore, LedgerUnavailableError
from .models import (
    Admitted,
    Balance,
    BalanceOutcome,
    BalanceUnavailable,
    Denied,
    DenialReason,
    Failed,
    LowBalanceWarning,
    RecordFailure,
    RecordOutcome,
    Recorded,
    ReserveOutcome,
)
from .pricing import DEFAULT_METER, PricingPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_low_balance(*, remaining: int, limit: int, pricing: PricingPolicy) -> LowBalanceWarning:
    """Warn iff ``0 < remaining <= max(ceil(ratio * limit), floor)``."""

    threshold = pricing.low_balance_threshold(limit)
    return LowBalanceWarning(
        warn=0 < remaining <= threshold,
        remaining=remaining,
        threshold=threshold,
    )


@dataclass
class QuotaGate:
    """Admits or denies metered work against the account's monthly allowance.

    Every ledger round trip is bounded by ``timeout``. When the ledger is
    unreachable or slow the gate denies with ``STORE_UNAVAILABLE``; it never
    admits on uncertainty and never raises to the caller.
    """

    ledger: LedgerStore
    relay: Optional[EventRelay] = None
    pricing: PricingPolicy = field(default_factory=PricingPolicy)
    timeout: float = 2.0
    clock: Callable[[], datetime] = _utcnow

    async def check_and_reserve(
        self,
        account_id: str,
        estimated_units: int,
        meter: str = DEFAULT_METER,
    ) -> ReserveOutcome:
        if not account_id or estimated_units < 0:
            return Denied(reason=DenialReason.INVALID_REQUEST)

        try:
            tier, limit, result = await self._bounded(self._reserve(account_id, estimated_units, meter))
        except (LedgerUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Ledger unavailable while reserving for %s: %r", account_id, exc)
            return Denied(reason=DenialReason.STORE_UNAVAILABLE)
        except Exception:
            logger.exception("Unexpected ledger failure while reserving for %s", account_id)
            return Denied(reason=DenialReason.STORE_UNAVAILABLE)

        if not result.admitted:
            logger.info(
                "Usage limit reached for %s: requested %s, remaining %s of %s",
                account_id,
                estimated_units,
                result.remaining,
                limit,
            )
            return Denied(
                reason=DenialReason.LIMIT_EXCEEDED,
                remaining=result.remaining,
                limit=limit,
                tier=tier,
            )
        return Admitted(
            remaining=result.remaining,
            limit=limit,
            tier=tier,
            estimated_cost=self.pricing.estimate_cost(meter, estimated_units),
        )

    async def record_actual(
        self,
        account_id: str,
        actual_units: int,
        meter: str = DEFAULT_METER,
        *,
        reserved_units: int = 0,
    ) -> RecordOutcome:
        """Charge the difference between actual and reserved usage.

        Counters never decrease within a period, so an over-estimate stays
        charged. A charge the ledger refuses is logged for reconciliation; the
        completed operation is never undone.
        """

        if not account_id or actual_units < 0 or reserved_units < 0:
            return Failed(reason=RecordFailure.INVALID_REQUEST, message="Units must be non-negative")

        delta = actual_units - reserved_units
        try:
            outcome = await self._bounded(self._charge(account_id, delta, meter))
        except (LedgerUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Unable to record %s units for %s: %r",
                actual_units,
                account_id,
                exc,
                extra={"account_id": account_id, "meter": meter, "reconcile": True},
            )
            return Failed(reason=RecordFailure.STORE_UNAVAILABLE, message=str(exc))
        except Exception:
            logger.exception("Unexpected ledger failure while recording usage for %s", account_id)
            return Failed(reason=RecordFailure.STORE_UNAVAILABLE)

        if isinstance(outcome, Failed):
            logger.warning(
                "Usage reconciliation needed for %s: %s",
                account_id,
                outcome.message,
                extra={"account_id": account_id, "meter": meter, "reconcile": True},
            )
            return outcome

        warning = evaluate_low_balance(remaining=outcome.remaining, limit=outcome.limit, pricing=self.pricing)
        if warning.warn and self.relay is not None:
            try:
                await self.relay.publish(
                    Topic.BALANCE_LOW.value,
                    BalanceLowPayload(
                        account_id=account_id,
                        remaining=warning.remaining,
                        threshold=warning.threshold,
                        limit=outcome.limit,
                        tier=outcome.tier,
                    ),
                )
            except Exception:
                logger.exception("Unable to publish low-balance warning for %s", account_id)
        return outcome

    async def get_balance(self, account_id: str) -> BalanceOutcome:
        try:
            return await self._bounded(self._balance(account_id))
        except (LedgerUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Ledger unavailable while reading balance for %s: %r", account_id, exc)
            return BalanceUnavailable()
        except Exception:
            logger.exception("Unexpected ledger failure while reading balance for %s", account_id)
            return BalanceUnavailable()

    async def is_low_balance(self, account_id: str) -> Union[LowBalanceWarning, BalanceUnavailable]:
        balance = await self.get_balance(account_id)
        if isinstance(balance, BalanceUnavailable):
            return balance
        return evaluate_low_balance(remaining=balance.remaining, limit=balance.total, pricing=self.pricing)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def _reserve(self, account_id: str, units: int, meter: str):
        entitlement = await self.ledger.ensure_entitlement(account_id)
        limit = self.pricing.limit_for(entitlement.tier)
        result = await self.ledger.atomic_reserve(
            account_id,
            period_key_for(self.clock()),
            units,
            limit,
            cost=self.pricing.estimate_cost(meter, units),
        )
        return entitlement.tier, limit, result

    async def _charge(self, account_id: str, delta: int, meter: str) -> RecordOutcome:
        entitlement = await self.ledger.ensure_entitlement(account_id)
        tier: Tier = entitlement.tier
        limit = self.pricing.limit_for(tier)
        period_key = period_key_for(self.clock())

        if delta <= 0:
            counter = await self.ledger.read_usage(account_id, period_key)
            used = counter.tokens_used if counter else 0
            return Recorded(charged_units=0, remaining=max(limit - used, 0), limit=limit, tier=tier)

        result = await self.ledger.atomic_reserve(
            account_id,
            period_key,
            delta,
            limit,
            cost=self.pricing.estimate_cost(meter, delta),
        )
        if not result.admitted:
            return Failed(
                reason=RecordFailure.RECONCILIATION_MISMATCH,
                message=f"{delta} unreserved units exceed remaining {result.remaining}",
            )
        return Recorded(charged_units=delta, remaining=result.remaining, limit=limit, tier=tier)

    async def _balance(self, account_id: str) -> Balance:
        entitlement = await self.ledger.ensure_entitlement(account_id)
        period_key = period_key_for(self.clock())
        counter = await self.ledger.read_usage(account_id, period_key)
        total = self.pricing.limit_for(entitlement.tier)
        used = counter.tokens_used if counter else 0
        return Balance(
            used=used,
            remaining=max(total - used, 0),
            total=total,
            tier=entitlement.tier,
            reset_at=reset_at_for(period_key),
        )
