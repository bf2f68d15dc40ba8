"""Platform commission rates and fee splits."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping

from expertpay_api.models.transaction import PaymentTypeEnum


DEFAULT_RATE = Decimal("0.15")
BUNDLE_RATE = Decimal("0.12")
SUBSCRIBER_DISCOUNT = Decimal("0.05")

# Recipient tier overrides; "new" covers experts without sales history.
TIER_RATES: Mapping[str, Decimal] = {
    "new": Decimal("0.25"),
    "silver": Decimal("0.18"),
    "gold": Decimal("0.15"),
    "platinum": Decimal("0.10"),
}

_CENT = Decimal("0.01")


@dataclass(slots=True)
class CommissionSplit:
    rate: Decimal
    platform_fee: Decimal
    net_amount: Decimal


def _normalize(value: object | None) -> str | None:
    if value is None:
        return None
    raw = getattr(value, "value", value)
    return str(raw).lower()


def calculate_commission_rate(
    payment_type: PaymentTypeEnum | str | None = None,
    recipient_tier: str | None = None,
    is_subscriber: bool = False,
) -> Decimal:
    """Return the platform's cut for a payment.

    Bundles start from a lower base; a recipient tier override replaces the
    base (bronze and unknown tiers keep it); subscribers get a flat discount
    applied last. The result never drops below zero.
    """

    rate = BUNDLE_RATE if _normalize(payment_type) == PaymentTypeEnum.BUNDLE.value else DEFAULT_RATE

    tier = _normalize(recipient_tier)
    if tier in TIER_RATES:
        rate = TIER_RATES[tier]

    if is_subscriber:
        rate -= SUBSCRIBER_DISCOUNT

    return max(Decimal("0"), rate)


def split_amount(gross_amount: Decimal, rate: Decimal) -> CommissionSplit:
    """Split ``gross_amount`` into platform fee and recipient share, rounded to cents."""

    gross = Decimal(gross_amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    platform_fee = (gross * rate).quantize(_CENT, rounding=ROUND_HALF_UP)
    return CommissionSplit(rate=rate, platform_fee=platform_fee, net_amount=gross - platform_fee)


__all__ = [
    "BUNDLE_RATE",
    "CommissionSplit",
    "DEFAULT_RATE",
    "SUBSCRIBER_DISCOUNT",
    "TIER_RATES",
    "calculate_commission_rate",
    "split_amount",
]
