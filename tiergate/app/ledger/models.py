"""Usage ledger models and billing period helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def period_key_for(now: Optional[datetime] = None) -> str:
    """Return the ``YYYY-MM`` key of the UTC calendar month containing ``now``."""

    current = _utc(now)
    return f"{current.year:04d}-{current.month:02d}"


def reset_at_for(period_key: str) -> datetime:
    """First instant (UTC) of the month following ``period_key``."""

    year_text, _, month_text = period_key.partition("-")
    year, month = int(year_text), int(month_text)
    if month == 12:
        return datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(year, month + 1, 1, tzinfo=timezone.utc)


class UsageCounter(BaseModel):
    """Units consumed by an account within one billing period."""

    account_id: str
    period_key: str
    tokens_used: int = Field(default=0, ge=0)
    monthly_limit: int = Field(default=0, ge=0)
    cost_total: float = 0.0
    reset_at: datetime

    model_config = ConfigDict(frozen=True)

    @property
    def remaining(self) -> int:
        return max(self.monthly_limit - self.tokens_used, 0)


class ReserveResult(BaseModel):
    """Outcome of an atomic reservation attempt against a usage counter."""

    admitted: bool
    tokens_used: int
    monthly_limit: int

    model_config = ConfigDict(frozen=True)

    @property
    def remaining(self) -> int:
        return max(self.monthly_limit - self.tokens_used, 0)
