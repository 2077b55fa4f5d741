"""Transactional ledger of entitlements, usage counters and audit logs."""

from .models import ReserveResult, UsageCounter, period_key_for, reset_at_for
from .store import InMemoryLedgerStore, LedgerStore, LedgerUnavailableError

__all__ = [
    "InMemoryLedgerStore",
    "LedgerStore",
    "LedgerUnavailableError",
    "ReserveResult",
    "UsageCounter",
    "period_key_for",
    "reset_at_for",
]
