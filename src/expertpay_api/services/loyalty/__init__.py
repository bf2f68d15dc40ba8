"""Loyalty service exports."""

from .ledger import (  # noqa: F401
    LoyaltyLedger,
    LoyaltyProfile,
    PointsMutation,
    RedemptionResult,
    ReferralResult,
    build_coupon_code,
    build_referral_code,
)
from .rules import (  # noqa: F401
    REWARDS,
    Reward,
    calculate_loyalty_points,
    tier_for_points,
)
