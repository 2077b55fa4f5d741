"""Ledger store contract and the in-memory implementation."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from ..billing.models import BillingEventRecord, Entitlement, TierChangeRecord
from .models import ReserveResult, UsageCounter, reset_at_for

logger = logging.getLogger(__name__)


class LedgerUnavailableError(RuntimeError):
    """Raised when the ledger store cannot be reached or fails mid-operation."""


class LedgerStore(Protocol):
    """Persistence operations shared by webhook ingestion and quota enforcement."""

    async def ensure_entitlement(self, account_id: str) -> Entitlement:
        """Return the account's entitlement, creating the free default if absent."""

    async def read_entitlement(self, account_id: str) -> Optional[Entitlement]:
        ...

    async def write_entitlement(self, entitlement: Entitlement, *, change: TierChangeRecord) -> Entitlement:
        """Persist ``entitlement`` and append ``change`` as one unit."""

    async def find_account_by_billing_customer_ref(self, billing_customer_ref: str) -> Optional[str]:
        ...

    async def find_account_by_email(self, email: str) -> Optional[str]:
        ...

    async def atomic_reserve(
        self,
        account_id: str,
        period_key: str,
        units: int,
        limit: int,
        *,
        cost: float = 0.0,
    ) -> ReserveResult:
        """Add ``units`` iff ``used + units <= limit``; never partially applied."""

    async def read_usage(self, account_id: str, period_key: str) -> Optional[UsageCounter]:
        ...

    async def list_tier_changes(self, account_id: str) -> Sequence[TierChangeRecord]:
        ...

    async def record_billing_event(self, record: BillingEventRecord) -> None:
        ...

    async def ping(self) -> None:
        """Raise :class:`LedgerUnavailableError` when the store is unreachable."""

    async def close(self) -> None:
        ...


class InMemoryLedgerStore:
    """Ledger store suitable for tests and local development.

    Every read-modify-write runs under a per-account ``asyncio.Lock``. The
    optional ``latency`` is awaited inside the critical section so concurrent
    callers genuinely interleave at the await points.
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self.available = True
        self._entitlements: Dict[str, Entitlement] = {}
        self._emails: Dict[str, str] = {}
        self._usage: Dict[Tuple[str, str], UsageCounter] = {}
        self._tier_changes: Dict[str, List[TierChangeRecord]] = defaultdict(list)
        self.billing_events: List[BillingEventRecord] = []
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def register_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        billing_customer_ref: Optional[str] = None,
    ) -> None:
        """Make an externally owned account resolvable by email or customer ref."""

        if email:
            self._emails[email.strip().lower()] = account_id
        if billing_customer_ref:
            current = self._entitlements.get(account_id) or Entitlement(account_id=account_id)
            self._entitlements[account_id] = current.model_copy(
                update={"billing_customer_ref": billing_customer_ref}
            )

    async def _pause(self) -> None:
        if not self.available:
            raise LedgerUnavailableError("In-memory ledger marked unavailable")
        if self.latency:
            await asyncio.sleep(self.latency)

    async def ensure_entitlement(self, account_id: str) -> Entitlement:
        async with self._locks[account_id]:
            await self._pause()
            entitlement = self._entitlements.get(account_id)
            if entitlement is None:
                entitlement = Entitlement(account_id=account_id)
                self._entitlements[account_id] = entitlement
            return entitlement

    async def read_entitlement(self, account_id: str) -> Optional[Entitlement]:
        await self._pause()
        return self._entitlements.get(account_id)

    async def write_entitlement(self, entitlement: Entitlement, *, change: TierChangeRecord) -> Entitlement:
        async with self._locks[entitlement.account_id]:
            await self._pause()
            stored = entitlement.model_copy(update={"updated_at": datetime.now(timezone.utc)})
            self._entitlements[entitlement.account_id] = stored
            self._tier_changes[entitlement.account_id].append(change)
            return stored

    async def find_account_by_billing_customer_ref(self, billing_customer_ref: str) -> Optional[str]:
        await self._pause()
        for entitlement in self._entitlements.values():
            if entitlement.billing_customer_ref == billing_customer_ref:
                return entitlement.account_id
        return None

    async def find_account_by_email(self, email: str) -> Optional[str]:
        await self._pause()
        return self._emails.get(email.strip().lower())

    async def atomic_reserve(
        self,
        account_id: str,
        period_key: str,
        units: int,
        limit: int,
        *,
        cost: float = 0.0,
    ) -> ReserveResult:
        async with self._locks[account_id]:
            key = (account_id, period_key)
            counter = self._usage.get(key)
            used = counter.tokens_used if counter else 0
            await self._pause()
            if used + units > limit:
                return ReserveResult(admitted=False, tokens_used=used, monthly_limit=limit)
            self._usage[key] = UsageCounter(
                account_id=account_id,
                period_key=period_key,
                tokens_used=used + units,
                monthly_limit=limit,
                cost_total=(counter.cost_total if counter else 0.0) + cost,
                reset_at=reset_at_for(period_key),
            )
            return ReserveResult(admitted=True, tokens_used=used + units, monthly_limit=limit)

    async def read_usage(self, account_id: str, period_key: str) -> Optional[UsageCounter]:
        await self._pause()
        return self._usage.get((account_id, period_key))

    async def list_tier_changes(self, account_id: str) -> Sequence[TierChangeRecord]:
        await self._pause()
        return list(self._tier_changes.get(account_id, ()))

    async def record_billing_event(self, record: BillingEventRecord) -> None:
        await self._pause()
        self.billing_events.append(record)

    async def ping(self) -> None:
        await self._pause()

    async def close(self) -> None:
        logger.debug("In-memory ledger closed")
