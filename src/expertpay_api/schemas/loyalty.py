from __future__ import annotations

from datetime import datetime

from pydantic import Field

from expertpay_api.services.loyalty import LoyaltyProfile, RedemptionResult, ReferralResult, Reward

from .base import CamelModel


class RewardResponse(CamelModel):
    id: str
    name: str
    points_cost: int
    reward_type: str
    value: float

    @classmethod
    def from_reward(cls, reward: Reward) -> "RewardResponse":
        return cls(
            id=reward.id,
            name=reward.name,
            points_cost=reward.points_cost,
            reward_type=reward.reward_type,
            value=float(reward.value),
        )


class PointEntryResponse(CamelModel):
    sequence: int
    delta: int
    balance_after: int
    reason: str
    reference: str | None = None
    occurred_at: datetime | None = None


class RedemptionHistoryResponse(CamelModel):
    reward_id: str
    points_cost: int
    coupon_code: str
    used: bool
    redeemed_at: datetime
    expires_at: datetime


class LoyaltyProfileResponse(CamelModel):
    owner_id: str
    points_balance: int
    lifetime_points: int
    tier: str
    next_tier: str | None = None
    points_to_next_tier: int
    tier_progress: int
    referral_code: str
    referral_count: int
    available_rewards: list[RewardResponse] = Field(default_factory=list)
    points_history: list[PointEntryResponse] = Field(default_factory=list)
    redeem_history: list[RedemptionHistoryResponse] = Field(default_factory=list)

    @classmethod
    def from_profile(cls, profile: LoyaltyProfile) -> "LoyaltyProfileResponse":
        return cls(
            owner_id=profile.owner_id,
            points_balance=profile.points_balance,
            lifetime_points=profile.lifetime_points,
            tier=profile.tier.value,
            next_tier=profile.next_tier.value if profile.next_tier else None,
            points_to_next_tier=profile.points_to_next_tier,
            tier_progress=profile.tier_progress,
            referral_code=profile.referral_code,
            referral_count=profile.referral_count,
            available_rewards=[RewardResponse.from_reward(reward) for reward in profile.available_rewards],
            points_history=[
                PointEntryResponse(
                    sequence=entry.sequence,
                    delta=entry.delta,
                    balance_after=entry.balance_after,
                    reason=entry.reason,
                    reference=entry.reference,
                    occurred_at=entry.occurred_at,
                )
                for entry in profile.points_history
            ],
            redeem_history=[
                RedemptionHistoryResponse(
                    reward_id=item.reward_id,
                    points_cost=item.points_cost,
                    coupon_code=item.coupon_code,
                    used=bool(item.used),
                    redeemed_at=item.redeemed_at,
                    expires_at=item.expires_at,
                )
                for item in profile.redeem_history
            ],
        )


class RedemptionRequest(CamelModel):
    reward_id: str = Field(..., min_length=1)


class RedemptionResponse(CamelModel):
    coupon_code: str
    reward: RewardResponse
    points_remaining: int
    expires_at: datetime

    @classmethod
    def from_result(cls, result: RedemptionResult) -> "RedemptionResponse":
        return cls(
            coupon_code=result.coupon_code,
            reward=RewardResponse.from_reward(result.reward),
            points_remaining=result.points_remaining,
            expires_at=result.expires_at,
        )


class ReferralRequest(CamelModel):
    referral_code: str = Field(..., min_length=1)
    new_owner_id: str = Field(..., min_length=1)
    reference: str | None = None


class ReferralResponse(CamelModel):
    referrer_id: str
    referee_id: str
    referrer_points: int
    referee_points: int
    already_processed: bool

    @classmethod
    def from_result(cls, result: ReferralResult) -> "ReferralResponse":
        return cls(
            referrer_id=result.referrer_id,
            referee_id=result.referee_id,
            referrer_points=result.referrer_points,
            referee_points=result.referee_points,
            already_processed=result.already_processed,
        )
