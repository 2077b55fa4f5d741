"""Static meter costs and per-tier monthly limits."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping

from ..billing.models import Tier

DEFAULT_METER = "gpt-4o-mini"

# Estimated cost per unit (token) consumed on each meter.
METER_COSTS: Dict[str, float] = {
    "gpt-4o": 0.000015,
    "gpt-4o-mini": 0.0000006,
    "gpt-4.1": 0.000015,
    "gpt-4": 0.000015,
    "gpt-3.5-turbo": 0.0000006,
}

DEFAULT_TIER_LIMITS: Dict[Tier, int] = {
    Tier.FREE: 10_000,
    Tier.LITE: 100_000,
    Tier.FULL: 1_602_000,
}

DEFAULT_LOW_BALANCE_FLOOR = 1000
DEFAULT_LOW_BALANCE_RATIO = 0.05


@dataclass(frozen=True)
class PricingPolicy:
    """Numeric policy applied by the quota gate."""

    meter_costs: Mapping[str, float] = field(default_factory=lambda: dict(METER_COSTS))
    tier_limits: Mapping[Tier, int] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    low_balance_floor: int = DEFAULT_LOW_BALANCE_FLOOR
    low_balance_ratio: float = DEFAULT_LOW_BALANCE_RATIO

    @classmethod
    def from_config(
        cls,
        *,
        meter_costs: Mapping[str, float],
        tier_limits: Mapping[str, int],
        low_balance_floor: int,
        low_balance_ratio: float,
    ) -> "PricingPolicy":
        costs = dict(METER_COSTS)
        costs.update(meter_costs)
        limits = dict(DEFAULT_TIER_LIMITS)
        limits.update({Tier(name): int(limit) for name, limit in tier_limits.items()})
        return cls(
            meter_costs=costs,
            tier_limits=limits,
            low_balance_floor=low_balance_floor,
            low_balance_ratio=low_balance_ratio,
        )

    def unit_cost(self, meter: str) -> float:
        """Per-unit cost of ``meter``; unknown meters are billed as the default meter."""

        if meter in self.meter_costs:
            return self.meter_costs[meter]
        return self.meter_costs.get(DEFAULT_METER, METER_COSTS[DEFAULT_METER])

    def estimate_cost(self, meter: str, units: int) -> float:
        return self.unit_cost(meter) * units

    def limit_for(self, tier: Tier) -> int:
        return int(self.tier_limits[tier])

    def low_balance_threshold(self, limit: int) -> int:
        scaled = math.ceil(Decimal(str(self.low_balance_ratio)) * limit)
        return max(int(scaled), self.low_balance_floor)
