from decimal import Decimal

import pytest

from expertpay_api.models.loyalty import LoyaltyTierEnum
from expertpay_api.services.payments.commission import calculate_commission_rate, split_amount
from expertpay_api.services.payments.discounts import (
    max_redeemable_points,
    plan_payment_discounts,
    plan_subscription_discount,
)


@pytest.mark.parametrize(
    ("payment_type", "tier", "subscriber", "expected"),
    [
        ("product", None, False, Decimal("0.15")),
        ("bundle", None, False, Decimal("0.12")),
        ("service", "new", False, Decimal("0.25")),
        ("product", "silver", False, Decimal("0.18")),
        ("product", "gold", True, Decimal("0.10")),
        ("bundle", "platinum", True, Decimal("0.05")),
        ("bundle", "bronze", False, Decimal("0.12")),
        ("product", "unranked", True, Decimal("0.10")),
    ],
)
def test_commission_rate_rules(payment_type, tier, subscriber, expected) -> None:
    assert calculate_commission_rate(payment_type, tier, subscriber) == expected


def test_commission_rate_never_negative(monkeypatch) -> None:
    from expertpay_api.services.payments import commission

    monkeypatch.setattr(commission, "SUBSCRIBER_DISCOUNT", Decimal("0.50"))
    assert calculate_commission_rate("bundle", "platinum", True) == Decimal("0")


def test_split_amount_rounds_to_cents() -> None:
    split = split_amount(Decimal("33.33"), Decimal("0.15"))

    assert split.platform_fee == Decimal("5.00")
    assert split.net_amount == Decimal("28.33")
    assert split.platform_fee + split.net_amount == Decimal("33.33")


def test_points_redemption_is_capped_at_half_the_purchase() -> None:
    assert max_redeemable_points(Decimal("20.00")) == 1000

    plan = plan_payment_discounts(
        Decimal("20.00"),
        available_points=5000,
        tier=LoyaltyTierEnum.BRONZE,
        redeem_points=3000,
    )

    assert plan.points_to_redeem == 1000
    assert plan.points_value == Decimal("10.00")
    assert plan.final_amount == Decimal("10.00")
    assert plan.as_dict() == {"points": {"redeemed": 1000, "value": "10.00"}}


def test_tier_discount_applies_after_points() -> None:
    plan = plan_payment_discounts(
        Decimal("100.00"),
        available_points=500,
        tier="gold",
        redeem_points=500,
        apply_tier_discount=True,
    )

    assert plan.points_to_redeem == 500
    assert plan.tier_discount_rate == Decimal("0.07")
    assert plan.tier_discount_amount == Decimal("6.65")
    assert plan.final_amount == Decimal("88.35")


def test_no_discounts_requested_keeps_list_price() -> None:
    plan = plan_payment_discounts(Decimal("42.50"), available_points=900, tier="silver")

    assert plan.final_amount == Decimal("42.50")
    assert plan.points_to_redeem == 0
    assert plan.as_dict() == {}


def test_subscription_tier_discount() -> None:
    plan = plan_subscription_discount(Decimal("49.99"), LoyaltyTierEnum.PLATINUM)

    assert plan.tier_discount_rate == Decimal("0.20")
    assert plan.final_amount == Decimal("39.99")
