"""Usage quota enforcement for metered operations."""

from .exceptions import UsageDeniedError
from .gate import QuotaGate, evaluate_low_balance
from .models import (
    Admitted,
    Balance,
    BalanceUnavailable,
    Denied,
    DenialReason,
    Failed,
    LowBalanceWarning,
    RecordFailure,
    Recorded,
)
from .pricing import DEFAULT_METER, METER_COSTS, PricingPolicy

__all__ = [
    "Admitted",
    "Balance",
    "BalanceUnavailable",
    "DEFAULT_METER",
    "Denied",
    "DenialReason",
    "Failed",
    "LowBalanceWarning",
    "METER_COSTS",
    "PricingPolicy",
    "QuotaGate",
    "RecordFailure",
    "Recorded",
    "UsageDeniedError",
    "evaluate_low_balance",
]
