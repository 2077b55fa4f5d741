"""Static mapping of provider price identifiers to product tiers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .models import Tier


@dataclass(frozen=True)
class PriceDefinition:
    """Describes a provider price and the tier it grants."""

    price_id: str
    tier: Tier
    generation: str


# Superseded and legacy prices stay mapped so existing subscribers keep their tier.
PRICE_DEFINITIONS = (
    PriceDefinition("price_1Rh7kCQYU340CsP0NGbx0Qnj", Tier.LITE, "current"),
    PriceDefinition("price_1Rh7lMQYU340CsP0yJy4VaTu", Tier.FULL, "current"),
    PriceDefinition("price_1RfM4LHlv5z8bwBIcwv3aUkb", Tier.LITE, "superseded"),
    PriceDefinition("price_1RfM4LHlv5z8bwBIKLFadfjp", Tier.FULL, "superseded"),
    PriceDefinition("price_1Rfh1nQYU340CsP0kXM8I05h", Tier.LITE, "legacy"),
    PriceDefinition("price_1RfgxvQYU340CsP0AcrSjH2O", Tier.FULL, "legacy"),
)

PRICE_TO_TIER: Dict[str, Tier] = {definition.price_id: definition.tier for definition in PRICE_DEFINITIONS}

_PAID_TIERS = frozenset({Tier.LITE, Tier.FULL})


def map_price_to_tier(price_id: Optional[str]) -> Optional[Tier]:
    """Return the tier granted by ``price_id`` or ``None`` when it is unknown."""

    if not price_id:
        return None
    return PRICE_TO_TIER.get(price_id)


@dataclass(frozen=True)
class TierMapper:
    """Price lookup that layers deployment-specific prices over the built-in table."""

    overrides: Mapping[str, Tier] = field(default_factory=dict)

    @classmethod
    def from_config(cls, price_tier_map: Mapping[str, str]) -> "TierMapper":
        overrides: Dict[str, Tier] = {}
        for price_id, raw_tier in price_tier_map.items():
            try:
                tier = Tier(raw_tier)
            except ValueError as exc:
                raise ValueError(f"Unknown tier {raw_tier!r} for price {price_id!r}") from exc
            if tier not in _PAID_TIERS:
                raise ValueError(f"Price {price_id!r} cannot map to the {tier.value} tier")
            overrides[price_id] = tier
        return cls(overrides=overrides)

    def __call__(self, price_id: Optional[str]) -> Optional[Tier]:
        if price_id and price_id in self.overrides:
            return self.overrides[price_id]
        return map_price_to_tier(price_id)
