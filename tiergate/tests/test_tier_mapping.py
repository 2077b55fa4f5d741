from __future__ import annotations

import pytest

from tiergate.app.billing import PRICE_TO_TIER, Tier, TierMapper, map_price_to_tier


@pytest.mark.parametrize(
    "price_id, tier",
    [
        ("price_1Rh7kCQYU340CsP0NGbx0Qnj", Tier.LITE),
        ("price_1Rh7lMQYU340CsP0yJy4VaTu", Tier.FULL),
        ("price_1RfM4LHlv5z8bwBIcwv3aUkb", Tier.LITE),
        ("price_1RfM4LHlv5z8bwBIKLFadfjp", Tier.FULL),
        ("price_1Rfh1nQYU340CsP0kXM8I05h", Tier.LITE),
        ("price_1RfgxvQYU340CsP0AcrSjH2O", Tier.FULL),
    ],
)
def test_known_prices_map_to_paid_tiers(price_id: str, tier: Tier) -> None:
    assert map_price_to_tier(price_id) is tier


def test_unknown_price_is_not_defaulted() -> None:
    assert map_price_to_tier("price_does_not_exist") is None
    assert map_price_to_tier("") is None
    assert map_price_to_tier(None) is None


def test_no_price_grants_free_tier() -> None:
    assert Tier.FREE not in set(PRICE_TO_TIER.values())


def test_configured_prices_extend_builtin_table() -> None:
    mapper = TierMapper.from_config({"price_custom_lite": "lite"})

    assert mapper("price_custom_lite") is Tier.LITE
    assert mapper("price_1Rh7lMQYU340CsP0yJy4VaTu") is Tier.FULL
    assert mapper("price_other") is None


@pytest.mark.parametrize("tier", ["free", "platinum"])
def test_configured_prices_reject_non_paid_tiers(tier: str) -> None:
    with pytest.raises(ValueError):
        TierMapper.from_config({"price_custom": tier})
