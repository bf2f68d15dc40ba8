"""Point earning rules, tier thresholds and the reward catalog.

Everything here is pure: given the same inputs the results are identical, so
expected point counts can be shown before a payment settles and recomputed
later for audits.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Mapping

from expertpay_api.models.loyalty import LoyaltyTierEnum
from expertpay_api.models.transaction import PaymentTypeEnum


POINTS_PER_DOLLAR = 1
REFERRAL_BONUS_REFERRER = 150
REFERRAL_BONUS_REFEREE = 100
REVIEW_BONUS = {"product": 10, "expert": 15}
REWARD_VALIDITY_DAYS = 30
# Share of the payer's points credited to the recipient of a completed payment.
RECIPIENT_POINTS_SHARE = Decimal("0.5")

TIER_THRESHOLDS: Mapping[LoyaltyTierEnum, int] = {
    LoyaltyTierEnum.BRONZE: 0,
    LoyaltyTierEnum.SILVER: 1000,
    LoyaltyTierEnum.GOLD: 5000,
    LoyaltyTierEnum.PLATINUM: 15000,
}

TIER_MULTIPLIERS: Mapping[LoyaltyTierEnum, Decimal] = {
    LoyaltyTierEnum.BRONZE: Decimal("1.0"),
    LoyaltyTierEnum.SILVER: Decimal("1.2"),
    LoyaltyTierEnum.GOLD: Decimal("1.5"),
    LoyaltyTierEnum.PLATINUM: Decimal("2.0"),
}

TYPE_MULTIPLIERS: Mapping[PaymentTypeEnum, Decimal] = {
    PaymentTypeEnum.PRODUCT: Decimal("1.0"),
    PaymentTypeEnum.SERVICE: Decimal("1.2"),
    PaymentTypeEnum.BUNDLE: Decimal("1.5"),
    PaymentTypeEnum.SUBSCRIPTION: Decimal("2.0"),
}

_TIER_ORDER = list(TIER_THRESHOLDS)


@dataclass(frozen=True, slots=True)
class Reward:
    """Entry in the static reward catalog."""

    id: str
    name: str
    points_cost: int
    reward_type: str
    value: Decimal


REWARDS: tuple[Reward, ...] = (
    Reward("DISCOUNT5", "$5 Off Your Next Purchase", 200, "discount", Decimal("5")),
    Reward("DISCOUNT10", "$10 Off Your Next Purchase", 400, "discount", Decimal("10")),
    Reward("PERCENT10", "10% Off Your Next Purchase", 500, "percent_discount", Decimal("10")),
    Reward("FREE_CONSULT", "Free 30-Minute Expert Consultation", 1500, "service", Decimal("0")),
    Reward("FREE_SHIPPING", "Free Shipping on Your Next Order", 300, "shipping", Decimal("0")),
)


def find_reward(reward_id: str) -> Reward | None:
    for reward in REWARDS:
        if reward.id == reward_id:
            return reward
    return None


def available_rewards(points: int) -> list[Reward]:
    """Rewards affordable with the given balance, cheapest first."""

    return sorted((reward for reward in REWARDS if reward.points_cost <= points), key=lambda r: r.points_cost)


def tier_for_points(points: int) -> LoyaltyTierEnum:
    """Return the highest tier whose threshold is at or below ``points``."""

    current = LoyaltyTierEnum.BRONZE
    for tier in _TIER_ORDER:
        if points >= TIER_THRESHOLDS[tier]:
            current = tier
    return current


def tier_rank(tier: LoyaltyTierEnum) -> int:
    return _TIER_ORDER.index(tier)


def next_tier(tier: LoyaltyTierEnum) -> LoyaltyTierEnum | None:
    index = tier_rank(tier)
    if index + 1 >= len(_TIER_ORDER):
        return None
    return _TIER_ORDER[index + 1]


def points_to_next_tier(points: int) -> int:
    upcoming = next_tier(tier_for_points(points))
    if upcoming is None:
        return 0
    return max(TIER_THRESHOLDS[upcoming] - points, 0)


def tier_progress(points: int) -> int:
    """Percentage (0-100) of the way from the current tier to the next one."""

    current = tier_for_points(points)
    upcoming = next_tier(current)
    if upcoming is None:
        return 100
    floor_points = TIER_THRESHOLDS[current]
    span = TIER_THRESHOLDS[upcoming] - floor_points
    return min(100, math.floor((points - floor_points) * 100 / span))


def coerce_payment_type(payment_type: PaymentTypeEnum | str | None) -> PaymentTypeEnum | None:
    if payment_type is None or isinstance(payment_type, PaymentTypeEnum):
        return payment_type
    try:
        return PaymentTypeEnum(str(payment_type).lower())
    except ValueError:
        return None


def coerce_tier(tier: LoyaltyTierEnum | str | None) -> LoyaltyTierEnum | None:
    if tier is None or isinstance(tier, LoyaltyTierEnum):
        return tier
    try:
        return LoyaltyTierEnum(str(tier).lower())
    except ValueError:
        return None


def calculate_loyalty_points(
    amount: Decimal | float | int,
    payment_type: PaymentTypeEnum | str | None = PaymentTypeEnum.PRODUCT,
    tier: LoyaltyTierEnum | str | None = LoyaltyTierEnum.BRONZE,
) -> int:
    """Points earned for a purchase: floor(amount x per-dollar x type x tier).

    Unknown payment types and tiers fall back to a 1.0 multiplier.
    """

    resolved_type = coerce_payment_type(payment_type)
    resolved_tier = coerce_tier(tier)
    type_multiplier = TYPE_MULTIPLIERS.get(resolved_type, Decimal("1.0")) if resolved_type else Decimal("1.0")
    tier_multiplier = TIER_MULTIPLIERS.get(resolved_tier, Decimal("1.0")) if resolved_tier else Decimal("1.0")
    raw = Decimal(str(amount)) * POINTS_PER_DOLLAR * type_multiplier * tier_multiplier
    if raw <= 0:
        return 0
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def recipient_share(points: int) -> int:
    return int((Decimal(points) * RECIPIENT_POINTS_SHARE).to_integral_value(rounding=ROUND_FLOOR))


__all__ = [
    "POINTS_PER_DOLLAR",
    "REFERRAL_BONUS_REFERRER",
    "REFERRAL_BONUS_REFEREE",
    "REVIEW_BONUS",
    "REWARD_VALIDITY_DAYS",
    "REWARDS",
    "Reward",
    "TIER_MULTIPLIERS",
    "TIER_THRESHOLDS",
    "TYPE_MULTIPLIERS",
    "available_rewards",
    "calculate_loyalty_points",
    "coerce_payment_type",
    "coerce_tier",
    "find_reward",
    "next_tier",
    "points_to_next_tier",
    "recipient_share",
    "tier_for_points",
    "tier_progress",
    "tier_rank",
]
