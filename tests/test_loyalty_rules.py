from decimal import Decimal

import pytest

from expertpay_api.models.loyalty import LoyaltyTierEnum
from expertpay_api.services.loyalty.rules import (
    available_rewards,
    calculate_loyalty_points,
    find_reward,
    next_tier,
    points_to_next_tier,
    recipient_share,
    tier_for_points,
    tier_progress,
)


@pytest.mark.parametrize(
    ("points", "expected"),
    [
        (0, LoyaltyTierEnum.BRONZE),
        (999, LoyaltyTierEnum.BRONZE),
        (1000, LoyaltyTierEnum.SILVER),
        (4999, LoyaltyTierEnum.SILVER),
        (5000, LoyaltyTierEnum.GOLD),
        (14999, LoyaltyTierEnum.GOLD),
        (15000, LoyaltyTierEnum.PLATINUM),
        (250000, LoyaltyTierEnum.PLATINUM),
    ],
)
def test_tier_boundaries(points: int, expected: LoyaltyTierEnum) -> None:
    assert tier_for_points(points) == expected


def test_points_earning_applies_type_and_tier_multipliers() -> None:
    assert calculate_loyalty_points(Decimal("100"), "product", "bronze") == 100
    assert calculate_loyalty_points(Decimal("100"), "service", "bronze") == 120
    assert calculate_loyalty_points(Decimal("100"), "bundle", "gold") == 225
    assert calculate_loyalty_points(Decimal("100"), "subscription", "platinum") == 400
    # single floor over the whole product
    assert calculate_loyalty_points(Decimal("9.99"), "service", "silver") == 14


def test_points_earning_defaults_unknown_inputs_to_unit_multiplier() -> None:
    assert calculate_loyalty_points(Decimal("50"), "gift-card", "diamond") == 50
    assert calculate_loyalty_points(Decimal("0"), "product", "gold") == 0
    assert calculate_loyalty_points(Decimal("-10"), "product", "gold") == 0


def test_next_tier_progress() -> None:
    assert next_tier(LoyaltyTierEnum.BRONZE) == LoyaltyTierEnum.SILVER
    assert next_tier(LoyaltyTierEnum.PLATINUM) is None
    assert points_to_next_tier(400) == 600
    assert points_to_next_tier(20000) == 0
    assert tier_progress(500) == 50
    assert tier_progress(3000) == 50
    assert tier_progress(20000) == 100


def test_reward_catalog_lookup() -> None:
    assert find_reward("DISCOUNT10").points_cost == 400
    assert find_reward("missing") is None
    affordable = available_rewards(350)
    assert [reward.id for reward in affordable] == ["DISCOUNT5", "FREE_SHIPPING"]


def test_recipient_share_floors() -> None:
    assert recipient_share(101) == 50
    assert recipient_share(0) == 0
