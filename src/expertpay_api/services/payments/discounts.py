"""Loyalty discount stacking for one-off payments and subscriptions."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Mapping

from expertpay_api.models.loyalty import LoyaltyTierEnum
from expertpay_api.services.loyalty.rules import POINTS_PER_DOLLAR, coerce_tier


POINTS_PER_CURRENCY_UNIT = 100
# Points may cover at most this share of a purchase.
MAX_POINTS_SHARE = Decimal("0.5")

PAYMENT_TIER_DISCOUNTS: Mapping[LoyaltyTierEnum, Decimal] = {
    LoyaltyTierEnum.PLATINUM: Decimal("0.10"),
    LoyaltyTierEnum.GOLD: Decimal("0.07"),
    LoyaltyTierEnum.SILVER: Decimal("0.05"),
    LoyaltyTierEnum.BRONZE: Decimal("0.03"),
}

SUBSCRIPTION_TIER_DISCOUNTS: Mapping[LoyaltyTierEnum, Decimal] = {
    LoyaltyTierEnum.PLATINUM: Decimal("0.20"),
    LoyaltyTierEnum.GOLD: Decimal("0.15"),
    LoyaltyTierEnum.SILVER: Decimal("0.10"),
    LoyaltyTierEnum.BRONZE: Decimal("0.05"),
}

_CENT = Decimal("0.01")


@dataclass(slots=True)
class DiscountPlan:
    """Amount to charge after loyalty benefits, plus what produced it."""

    list_amount: Decimal
    final_amount: Decimal
    points_to_redeem: int = 0
    points_value: Decimal = Decimal("0")
    tier_discount_rate: Decimal = Decimal("0")
    tier_discount_amount: Decimal = Decimal("0")

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.points_to_redeem:
            payload["points"] = {"redeemed": self.points_to_redeem, "value": str(self.points_value)}
        if self.tier_discount_rate:
            payload["tier"] = {
                "rate": str(self.tier_discount_rate),
                "amount": str(self.tier_discount_amount),
            }
        return payload


def max_redeemable_points(amount: Decimal) -> int:
    limit = Decimal(amount) * MAX_POINTS_SHARE * POINTS_PER_CURRENCY_UNIT * POINTS_PER_DOLLAR
    return max(int(limit.to_integral_value(rounding=ROUND_FLOOR)), 0)


def plan_payment_discounts(
    amount: Decimal,
    *,
    available_points: int,
    tier: LoyaltyTierEnum | str | None,
    redeem_points: int = 0,
    apply_tier_discount: bool = False,
) -> DiscountPlan:
    """Apply a points redemption, then the optional tier discount.

    Redemption is bounded by the request, the balance and half of the purchase;
    100 points are worth one currency unit.
    """

    list_amount = Decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    plan = DiscountPlan(list_amount=list_amount, final_amount=list_amount)

    if redeem_points > 0 and available_points > 0:
        points = min(int(redeem_points), int(available_points), max_redeemable_points(list_amount))
        if points > 0:
            value = (Decimal(points) / POINTS_PER_CURRENCY_UNIT).quantize(_CENT, rounding=ROUND_HALF_UP)
            plan.points_to_redeem = points
            plan.points_value = value
            plan.final_amount = max(Decimal("0"), plan.final_amount - value)

    resolved_tier = coerce_tier(tier)
    if apply_tier_discount and resolved_tier in PAYMENT_TIER_DISCOUNTS:
        rate = PAYMENT_TIER_DISCOUNTS[resolved_tier]
        discount = (plan.final_amount * rate).quantize(_CENT, rounding=ROUND_HALF_UP)
        plan.tier_discount_rate = rate
        plan.tier_discount_amount = discount
        plan.final_amount -= discount

    return plan


def plan_subscription_discount(amount: Decimal, tier: LoyaltyTierEnum | str | None) -> DiscountPlan:
    list_amount = Decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    plan = DiscountPlan(list_amount=list_amount, final_amount=list_amount)
    resolved_tier = coerce_tier(tier)
    rate = SUBSCRIPTION_TIER_DISCOUNTS.get(resolved_tier) if resolved_tier else None
    if rate:
        discount = (list_amount * rate).quantize(_CENT, rounding=ROUND_HALF_UP)
        plan.tier_discount_rate = rate
        plan.tier_discount_amount = discount
        plan.final_amount = list_amount - discount
    return plan


__all__ = [
    "DiscountPlan",
    "PAYMENT_TIER_DISCOUNTS",
    "SUBSCRIPTION_TIER_DISCOUNTS",
    "max_redeemable_points",
    "plan_payment_discounts",
    "plan_subscription_discount",
]
