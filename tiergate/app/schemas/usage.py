"""API schemas for usage quota endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import Tier
from ..quota.models import Admitted, Balance, LowBalanceWarning, Recorded
from ..quota.pricing import DEFAULT_METER


class ReserveRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    units: int
    meter: str = DEFAULT_METER

    model_config = ConfigDict(populate_by_name=True)


class ReserveResponse(BaseModel):
    admitted: bool = True
    remaining: int
    limit: int
    tier: Tier
    estimated_cost: float = Field(alias="estimatedCost")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: Admitted) -> "ReserveResponse":
        return cls(
            remaining=outcome.remaining,
            limit=outcome.limit,
            tier=outcome.tier,
            estimated_cost=outcome.estimated_cost,
        )


class RecordRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    units: int
    meter: str = DEFAULT_METER
    reserved_units: int = Field(alias="reservedUnits", default=0)

    model_config = ConfigDict(populate_by_name=True)


class RecordResponse(BaseModel):
    recorded: bool
    charged_units: int = Field(alias="chargedUnits", default=0)
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_recorded(cls, outcome: Recorded) -> "RecordResponse":
        return cls(
            recorded=True,
            charged_units=outcome.charged_units,
            remaining=outcome.remaining,
            limit=outcome.limit,
        )


class BalanceResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    used: int
    remaining: int
    total: int
    tier: Tier
    reset_at: datetime = Field(alias="resetAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_balance(cls, account_id: str, balance: Balance) -> "BalanceResponse":
        return cls(
            account_id=account_id,
            used=balance.used,
            remaining=balance.remaining,
            total=balance.total,
            tier=balance.tier,
            reset_at=balance.reset_at,
        )


class LowBalanceResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    warn: bool
    remaining: int
    threshold: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_warning(cls, account_id: str, warning: LowBalanceWarning) -> "LowBalanceResponse":
        return cls(
            account_id=account_id,
            warn=warning.warn,
            remaining=warning.remaining,
            threshold=warning.threshold,
        )
