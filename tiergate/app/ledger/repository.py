"""PostgreSQL-backed ledger store built on asyncpg."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Sequence

import asyncpg

from ..billing.models import (
    BillingEventRecord,
    Entitlement,
    SubscriptionStatus,
    Tier,
    TierChangeRecord,
)
from .models import ReserveResult, UsageCounter, reset_at_for
from .store import LedgerUnavailableError

LOGGER = logging.getLogger("ledger.postgres")


ENSURE_ENTITLEMENT_SQL = """
    INSERT INTO entitlements (account_id, tier, subscription_status)
    VALUES ($1, 'free', 'inactive')
    ON CONFLICT (account_id) DO NOTHING
"""

SELECT_ENTITLEMENT_SQL = """
    SELECT account_id, tier, subscription_status, billing_customer_ref, updated_at
    FROM entitlements
    WHERE account_id = $1
"""

UPSERT_ENTITLEMENT_SQL = """
    INSERT INTO entitlements (account_id, tier, subscription_status, billing_customer_ref, updated_at)
    VALUES ($1, $2, $3, $4, NOW())
    ON CONFLICT (account_id) DO UPDATE SET
        tier = EXCLUDED.tier,
        subscription_status = EXCLUDED.subscription_status,
        billing_customer_ref = COALESCE(EXCLUDED.billing_customer_ref, entitlements.billing_customer_ref),
        updated_at = NOW()
    RETURNING account_id, tier, subscription_status, billing_customer_ref, updated_at
"""

INSERT_TIER_CHANGE_SQL = """
    INSERT INTO tier_changes (account_id, previous_tier, new_tier, source, event_metadata, created_at)
    VALUES ($1, $2, $3, $4, $5::jsonb, $6)
"""

SELECT_TIER_CHANGES_SQL = """
    SELECT account_id, previous_tier, new_tier, source, event_metadata, created_at
    FROM tier_changes
    WHERE account_id = $1
    ORDER BY created_at ASC, id ASC
"""

FIND_BY_CUSTOMER_REF_SQL = """
    SELECT account_id FROM entitlements WHERE billing_customer_ref = $1 LIMIT 1
"""

FIND_BY_EMAIL_SQL = """
    SELECT account_id FROM accounts WHERE lower(email) = lower($1) LIMIT 1
"""

ENSURE_COUNTER_SQL = """
    INSERT INTO usage_counters (account_id, period_key, tokens_used, monthly_limit, cost_total, reset_at)
    VALUES ($1, $2, 0, $3, 0, $4)
    ON CONFLICT (account_id, period_key) DO NOTHING
"""

RESERVE_SQL = """
    UPDATE usage_counters
    SET tokens_used = tokens_used + $3,
        monthly_limit = $4,
        cost_total = cost_total + $5
    WHERE account_id = $1
      AND period_key = $2
      AND tokens_used + $3 <= $4
    RETURNING tokens_used
"""

SELECT_COUNTER_SQL = """
    SELECT account_id, period_key, tokens_used, monthly_limit, cost_total, reset_at
    FROM usage_counters
    WHERE account_id = $1 AND period_key = $2
"""

INSERT_BILLING_EVENT_SQL = """
    INSERT INTO billing_events (
        provider_event_id, event_type, outcome, account_id, detail, metadata, created_at
    ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
"""

_TRANSIENT_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


def _ensure_json(value: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(dict(value or {}), default=str)


def _load_json(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_entitlement(row: Mapping[str, Any]) -> Entitlement:
    return Entitlement(
        account_id=row["account_id"],
        tier=Tier(row["tier"]),
        subscription_status=SubscriptionStatus(row["subscription_status"]),
        billing_customer_ref=row["billing_customer_ref"],
        updated_at=row["updated_at"],
    )


def _row_to_tier_change(row: Mapping[str, Any]) -> TierChangeRecord:
    return TierChangeRecord(
        account_id=row["account_id"],
        previous_tier=Tier(row["previous_tier"]) if row["previous_tier"] else None,
        new_tier=Tier(row["new_tier"]),
        source=row["source"],
        event_metadata=_load_json(row["event_metadata"]),
        created_at=row["created_at"],
    )


def _row_to_counter(row: Mapping[str, Any]) -> UsageCounter:
    return UsageCounter(
        account_id=row["account_id"],
        period_key=row["period_key"],
        tokens_used=int(row["tokens_used"]),
        monthly_limit=int(row["monthly_limit"]),
        cost_total=float(row["cost_total"]),
        reset_at=row["reset_at"],
    )


async def create_ledger_pool(
    db_config: Mapping[str, Any],
    *,
    connect_timeout: float,
) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        min_size=1,
        max_size=10,
        command_timeout=10,
        timeout=connect_timeout,
        **dict(db_config),
    )


class PostgresLedgerStore:
    """Ledger store persisting entitlements and usage counters in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, db_config: Mapping[str, Any], *, connect_timeout: float) -> "PostgresLedgerStore":
        try:
            pool = await create_ledger_pool(db_config, connect_timeout=connect_timeout)
        except _TRANSIENT_ERRORS as exc:
            raise LedgerUnavailableError(f"Unable to connect to ledger database: {exc}") from exc
        return cls(pool)

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self._pool.acquire() as connection:
                yield connection
        except _TRANSIENT_ERRORS as exc:
            LOGGER.warning("Ledger operation failed: %s", exc)
            raise LedgerUnavailableError(str(exc)) from exc

    async def ensure_entitlement(self, account_id: str) -> Entitlement:
        async with self._connection() as connection:
            async with connection.transaction():
                await connection.execute(ENSURE_ENTITLEMENT_SQL, account_id)
                row = await connection.fetchrow(SELECT_ENTITLEMENT_SQL, account_id)
        return _row_to_entitlement(row)

    async def read_entitlement(self, account_id: str) -> Optional[Entitlement]:
        async with self._connection() as connection:
            row = await connection.fetchrow(SELECT_ENTITLEMENT_SQL, account_id)
        return _row_to_entitlement(row) if row else None

    async def write_entitlement(self, entitlement: Entitlement, *, change: TierChangeRecord) -> Entitlement:
        async with self._connection() as connection:
            async with connection.transaction():
                row = await connection.fetchrow(
                    UPSERT_ENTITLEMENT_SQL,
                    entitlement.account_id,
                    entitlement.tier.value,
                    entitlement.subscription_status.value,
                    entitlement.billing_customer_ref,
                )
                await connection.execute(
                    INSERT_TIER_CHANGE_SQL,
                    change.account_id,
                    change.previous_tier.value if change.previous_tier else None,
                    change.new_tier.value,
                    change.source,
                    _ensure_json(change.event_metadata),
                    change.created_at,
                )
        return _row_to_entitlement(row)

    async def find_account_by_billing_customer_ref(self, billing_customer_ref: str) -> Optional[str]:
        async with self._connection() as connection:
            return await connection.fetchval(FIND_BY_CUSTOMER_REF_SQL, billing_customer_ref)

    async def find_account_by_email(self, email: str) -> Optional[str]:
        async with self._connection() as connection:
            return await connection.fetchval(FIND_BY_EMAIL_SQL, email.strip())

    async def atomic_reserve(
        self,
        account_id: str,
        period_key: str,
        units: int,
        limit: int,
        *,
        cost: float = 0.0,
    ) -> ReserveResult:
        async with self._connection() as connection:
            async with connection.transaction():
                await connection.execute(
                    ENSURE_COUNTER_SQL, account_id, period_key, limit, reset_at_for(period_key)
                )
                used = await connection.fetchval(RESERVE_SQL, account_id, period_key, units, limit, cost)
                if used is not None:
                    return ReserveResult(admitted=True, tokens_used=int(used), monthly_limit=limit)
                row = await connection.fetchrow(SELECT_COUNTER_SQL, account_id, period_key)
        return ReserveResult(admitted=False, tokens_used=int(row["tokens_used"]), monthly_limit=limit)

    async def read_usage(self, account_id: str, period_key: str) -> Optional[UsageCounter]:
        async with self._connection() as connection:
            row = await connection.fetchrow(SELECT_COUNTER_SQL, account_id, period_key)
        return _row_to_counter(row) if row else None

    async def list_tier_changes(self, account_id: str) -> Sequence[TierChangeRecord]:
        async with self._connection() as connection:
            rows = await connection.fetch(SELECT_TIER_CHANGES_SQL, account_id)
        return [_row_to_tier_change(row) for row in rows]

    async def record_billing_event(self, record: BillingEventRecord) -> None:
        async with self._connection() as connection:
            await connection.execute(
                INSERT_BILLING_EVENT_SQL,
                record.provider_event_id,
                record.event_type,
                record.outcome.value,
                record.account_id,
                record.detail,
                _ensure_json(record.metadata),
                record.created_at,
            )

    async def ping(self) -> None:
        async with self._connection() as connection:
            await connection.fetchval("SELECT 1")

    async def close(self) -> None:
        await self._pool.close()
