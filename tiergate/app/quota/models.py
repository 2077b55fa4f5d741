"""Result types returned by the quota gate."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from ..billing.models import Tier


class DenialReason(str, Enum):
    """Why a metered operation was not admitted."""

    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INVALID_REQUEST = "INVALID_REQUEST"


class RecordFailure(str, Enum):
    """Why actual usage could not be recorded."""

    RECONCILIATION_MISMATCH = "RECONCILIATION_MISMATCH"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INVALID_REQUEST = "INVALID_REQUEST"


class Admitted(BaseModel):
    remaining: int
    limit: int
    tier: Tier
    estimated_cost: float = 0.0

    model_config = ConfigDict(frozen=True)


class Denied(BaseModel):
    """The operation must not proceed.

    ``remaining`` and ``limit`` are ``None`` when the ledger could not be read.
    """

    reason: DenialReason
    remaining: Optional[int] = None
    limit: Optional[int] = None
    tier: Optional[Tier] = None

    model_config = ConfigDict(frozen=True)


class Recorded(BaseModel):
    charged_units: int
    remaining: int
    limit: int
    tier: Tier

    model_config = ConfigDict(frozen=True)


class Failed(BaseModel):
    reason: RecordFailure
    message: str = ""

    model_config = ConfigDict(frozen=True)


class Balance(BaseModel):
    used: int
    remaining: int
    total: int
    tier: Tier
    reset_at: datetime

    model_config = ConfigDict(frozen=True)


class BalanceUnavailable(BaseModel):
    reason: DenialReason = DenialReason.STORE_UNAVAILABLE

    model_config = ConfigDict(frozen=True)


class LowBalanceWarning(BaseModel):
    warn: bool
    remaining: int
    threshold: int

    model_config = ConfigDict(frozen=True)


ReserveOutcome = Union[Admitted, Denied]
RecordOutcome = Union[Recorded, Failed]
BalanceOutcome = Union[Balance, BalanceUnavailable]
