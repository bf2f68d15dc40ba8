"""Loyalty ledger: point balances, tiers, rewards and referral bonuses."""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from expertpay_api.core.errors import (
    ConcurrentModification,
    InsufficientPoints,
    InvalidReferralCode,
    NotFound,
    RewardNotFound,
    SelfReferral,
    ValidationError,
)
from expertpay_api.core.settings import settings
from expertpay_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyPointEntry,
    LoyaltyRedemption,
    LoyaltyReferral,
    LoyaltyTierEnum,
)
from expertpay_api.services.loyalty.rules import (
    REFERRAL_BONUS_REFEREE,
    REFERRAL_BONUS_REFERRER,
    REVIEW_BONUS,
    REWARD_VALIDITY_DAYS,
    Reward,
    available_rewards,
    find_reward,
    next_tier,
    points_to_next_tier,
    tier_for_points,
    tier_progress,
    tier_rank,
)


_MAX_REFERRAL_CODE_ATTEMPTS = 5
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass(slots=True)
class PointsMutation:
    """Outcome of a single balance change."""

    account: LoyaltyAccount
    entry: LoyaltyPointEntry
    applied_delta: int
    previous_tier: LoyaltyTierEnum
    new_tier: LoyaltyTierEnum

    @property
    def tier_upgraded(self) -> bool:
        return tier_rank(self.new_tier) > tier_rank(self.previous_tier)


@dataclass(slots=True)
class RedemptionResult:
    coupon_code: str
    reward: Reward
    points_remaining: int
    expires_at: datetime


@dataclass(slots=True)
class ReferralResult:
    referrer_id: str
    referee_id: str
    referrer_points: int
    referee_points: int
    already_processed: bool = False


@dataclass(slots=True)
class LoyaltyProfile:
    """Read-only snapshot of an account for clients."""

    owner_id: str
    points_balance: int
    lifetime_points: int
    tier: LoyaltyTierEnum
    next_tier: Optional[LoyaltyTierEnum]
    points_to_next_tier: int
    tier_progress: int
    referral_code: str
    referral_count: int
    available_rewards: list[Reward] = field(default_factory=list)
    points_history: list[LoyaltyPointEntry] = field(default_factory=list)
    redeem_history: list[LoyaltyRedemption] = field(default_factory=list)


def build_referral_code(identifier: str, suffix: int | None = None) -> str:
    """Five uppercase characters from the identifier plus five random digits."""

    local_part = identifier.split("@", 1)[0]
    prefix = (_NON_ALNUM.sub("", local_part) + "REFER")[:5].upper()
    digits = suffix if suffix is not None else random.randint(10000, 99999)
    return f"{prefix}{digits}"


def build_coupon_code(reward_id: str, owner_id: str, timestamp_ms: int | None = None) -> str:
    """Compose a coupon from the reward id, a timestamp tail and an owner fragment."""

    stamp = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
    reward_part = _NON_ALNUM.sub("", reward_id).upper()[:4]
    owner_part = _NON_ALNUM.sub("", owner_id).upper()[-4:]
    return f"{reward_part}-{stamp[7:]}-{owner_part}"


class LoyaltyLedger:
    """Owns loyalty balances; every balance write is a compare-and-swap on ``version``.

    Each public mutation commits its own unit of work, so callers holding
    unsaved changes on the same session should flush or commit them first.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        max_cas_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._max_cas_attempts = max_cas_attempts or settings.ledger_max_cas_attempts

    async def get_account(self, owner_id: str) -> LoyaltyAccount | None:
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.owner_id == owner_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_account(self, owner_id: str, *, identifier: str | None = None) -> LoyaltyAccount:
        """Fetch or lazily create the account for ``owner_id``.

        ``identifier`` (usually an email) seeds the referral code; the owner id is
        used when it is absent.
        """

        if not owner_id:
            raise ValidationError("owner_id is required")

        account = await self.get_account(owner_id)
        if account:
            return account

        for _ in range(_MAX_REFERRAL_CODE_ATTEMPTS):
            code = await self._generate_unique_referral_code(identifier or owner_id)
            account = LoyaltyAccount(
                owner_id=owner_id,
                referral_code=code,
                points_balance=0,
                lifetime_points=0,
                tier=LoyaltyTierEnum.BRONZE,
                version=0,
            )
            self._db.add(account)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                logger.warning("Detected race when creating loyalty account", owner_id=owner_id)
                existing = await self.get_account(owner_id)
                if existing:
                    return existing
                continue

            logger.info("Created loyalty account", owner_id=owner_id, account_id=str(account.id))
            return account

        raise ConcurrentModification("Unable to allocate a unique referral code")

    async def add_points(
        self,
        owner_id: str,
        delta: int,
        reason: str,
        reference: str | None = None,
        *,
        clamp: bool = False,
    ) -> PointsMutation:
        """Apply a signed point delta.

        A negative delta larger than the balance raises ``InsufficientPoints``
        unless ``clamp`` is set, in which case only the available balance is
        deducted. Clamping is reserved for refund reversals.
        """

        return await self._apply_delta(owner_id, int(delta), reason, reference, clamp=clamp)

    async def redeem_reward(self, owner_id: str, reward_id: str) -> RedemptionResult:
        """Exchange points for a catalog reward and issue a coupon code."""

        reward = find_reward(reward_id)
        if reward is None:
            raise RewardNotFound(f"Reward {reward_id} not found")

        account = await self.get_or_create_account(owner_id)
        if account.points_balance < reward.points_cost:
            raise InsufficientPoints(
                f"Not enough points: {account.points_balance} available, {reward.points_cost} required"
            )

        redeemed_at = datetime.now(timezone.utc)
        expires_at = redeemed_at + timedelta(days=REWARD_VALIDITY_DAYS)
        coupon_code = build_coupon_code(reward.id, owner_id, int(redeemed_at.timestamp() * 1000))

        def _redemption_row(locked: LoyaltyAccount) -> Iterable[Any]:
            yield LoyaltyRedemption(
                account_id=locked.id,
                reward_id=reward.id,
                points_cost=reward.points_cost,
                coupon_code=coupon_code,
                used=False,
                redeemed_at=redeemed_at,
                expires_at=expires_at,
            )

        mutation = await self._apply_delta(
            owner_id,
            -reward.points_cost,
            f"Redeemed {reward.name}",
            reward.id,
            on_applied=_redemption_row,
        )
        logger.info(
            "Redeemed loyalty reward",
            owner_id=owner_id,
            reward_id=reward.id,
            coupon_code=coupon_code,
        )
        return RedemptionResult(
            coupon_code=coupon_code,
            reward=reward,
            points_remaining=mutation.account.points_balance,
            expires_at=expires_at,
        )

    async def process_referral(
        self,
        referral_code: str,
        new_owner_id: str,
        reference: str | None = None,
    ) -> ReferralResult:
        """Credit both sides of a referral once per (referrer, new owner) pair."""

        code = (referral_code or "").strip().upper()
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.referral_code == code)
        referrer = (await self._db.execute(stmt)).scalar_one_or_none()
        if referrer is None:
            raise InvalidReferralCode(f"Referral code {referral_code} is not valid")
        if referrer.owner_id == new_owner_id:
            raise SelfReferral()

        referrer_owner_id = referrer.owner_id
        if await self._find_referral(referrer.id, new_owner_id) is not None:
            logger.info("Referral already processed", referrer_id=referrer_owner_id, referee_id=new_owner_id)
            return ReferralResult(referrer_owner_id, new_owner_id, 0, 0, already_processed=True)

        def _referral_row(locked: LoyaltyAccount) -> Iterable[Any]:
            yield LoyaltyReferral(
                referrer_account_id=locked.id,
                referred_owner_id=new_owner_id,
                reference=reference,
                referrer_points=REFERRAL_BONUS_REFERRER,
                referee_points=REFERRAL_BONUS_REFEREE,
            )

        try:
            await self._apply_delta(
                referrer_owner_id,
                REFERRAL_BONUS_REFERRER,
                f"Referral bonus for {new_owner_id}",
                reference,
                on_applied=_referral_row,
            )
        except IntegrityError:
            logger.info("Referral already processed", referrer_id=referrer_owner_id, referee_id=new_owner_id)
            return ReferralResult(referrer_owner_id, new_owner_id, 0, 0, already_processed=True)

        await self.get_or_create_account(new_owner_id)
        await self._apply_delta(
            new_owner_id,
            REFERRAL_BONUS_REFEREE,
            f"Welcome bonus from {referrer_owner_id}",
            reference,
        )
        logger.info("Processed referral", referrer_id=referrer_owner_id, referee_id=new_owner_id)
        return ReferralResult(
            referrer_id=referrer_owner_id,
            referee_id=new_owner_id,
            referrer_points=REFERRAL_BONUS_REFERRER,
            referee_points=REFERRAL_BONUS_REFEREE,
        )

    async def add_review_points(self, owner_id: str, review_id: str, review_type: str = "product") -> PointsMutation | None:
        """Award the review bonus once per review id; returns None on repeats."""

        reference = f"review:{review_id}"
        account = await self.get_or_create_account(owner_id)
        stmt = select(LoyaltyPointEntry.id).where(
            LoyaltyPointEntry.account_id == account.id,
            LoyaltyPointEntry.reference == reference,
        )
        if (await self._db.execute(stmt)).first() is not None:
            return None

        points = REVIEW_BONUS.get(review_type, REVIEW_BONUS["product"])
        return await self._apply_delta(owner_id, points, f"{review_type.capitalize()} review bonus", reference)

    async def get_profile(self, owner_id: str) -> LoyaltyProfile:
        await self.get_or_create_account(owner_id)
        stmt = (
            select(LoyaltyAccount)
            .options(
                selectinload(LoyaltyAccount.point_entries),
                selectinload(LoyaltyAccount.redemptions),
                selectinload(LoyaltyAccount.referrals),
            )
            .where(LoyaltyAccount.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is None:
            raise NotFound(f"Loyalty account for {owner_id} not found")

        balance = account.points_balance
        tier = tier_for_points(balance)
        return LoyaltyProfile(
            owner_id=account.owner_id,
            points_balance=balance,
            lifetime_points=account.lifetime_points,
            tier=tier,
            next_tier=next_tier(tier),
            points_to_next_tier=points_to_next_tier(balance),
            tier_progress=tier_progress(balance),
            referral_code=account.referral_code,
            referral_count=len(account.referrals),
            available_rewards=available_rewards(balance),
            points_history=list(account.point_entries),
            redeem_history=sorted(account.redemptions, key=lambda item: item.redeemed_at),
        )

    async def _read_account(self, owner_id: str) -> LoyaltyAccount | None:
        stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _apply_delta(
        self,
        owner_id: str,
        delta: int,
        reason: str,
        reference: str | None,
        *,
        clamp: bool = False,
        on_applied: Callable[[LoyaltyAccount], Iterable[Any]] | None = None,
    ) -> PointsMutation:
        await self.get_or_create_account(owner_id)

        for attempt in range(1, self._max_cas_attempts + 1):
            account = await self._read_account(owner_id)
            if account is None:
                raise NotFound(f"Loyalty account for {owner_id} not found")

            observed_version = account.version
            balance = account.points_balance
            applied = delta
            if balance + delta < 0:
                if not clamp:
                    raise InsufficientPoints(
                        f"Not enough points: {balance} available, {-delta} required"
                    )
                applied = -balance

            new_balance = balance + applied
            previous_tier = account.tier
            new_tier = tier_for_points(new_balance)
            stmt = (
                update(LoyaltyAccount)
                .where(
                    LoyaltyAccount.id == account.id,
                    LoyaltyAccount.version == observed_version,
                )
                .values(
                    points_balance=new_balance,
                    lifetime_points=LoyaltyAccount.lifetime_points + max(applied, 0),
                    tier=new_tier,
                    version=observed_version + 1,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._db.execute(stmt)
            if result.rowcount != 1:
                logger.warning(
                    "Loyalty balance changed concurrently; retrying",
                    owner_id=owner_id,
                    attempt=attempt,
                )
                continue

            entry = LoyaltyPointEntry(
                account_id=account.id,
                sequence=observed_version + 1,
                delta=applied,
                requested_delta=delta,
                balance_after=new_balance,
                reason=reason,
                reference=reference,
            )
            self._db.add(entry)
            if on_applied is not None:
                for row in on_applied(account):
                    self._db.add(row)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                raise
            await self._db.refresh(account)

            mutation = PointsMutation(
                account=account,
                entry=entry,
                applied_delta=applied,
                previous_tier=previous_tier,
                new_tier=new_tier,
            )
            logger.info(
                "Recorded loyalty points",
                owner_id=owner_id,
                delta=applied,
                requested_delta=delta,
                balance=new_balance,
                reason=reason,
            )
            if mutation.tier_upgraded:
                logger.info(
                    "Upgraded loyalty tier",
                    owner_id=owner_id,
                    previous_tier=previous_tier.value,
                    tier=new_tier.value,
                )
            return mutation

        raise ConcurrentModification(f"Loyalty account for {owner_id} is being modified concurrently")

    async def _find_referral(self, referrer_account_id: Any, referred_owner_id: str) -> LoyaltyReferral | None:
        stmt = select(LoyaltyReferral).where(
            LoyaltyReferral.referrer_account_id == referrer_account_id,
            LoyaltyReferral.referred_owner_id == referred_owner_id,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _generate_unique_referral_code(self, identifier: str) -> str:
        for _ in range(_MAX_REFERRAL_CODE_ATTEMPTS):
            candidate = build_referral_code(identifier)
            stmt = select(LoyaltyAccount.id).where(LoyaltyAccount.referral_code == candidate)
            if (await self._db.execute(stmt)).first() is None:
                return candidate
        raise ConcurrentModification("Unable to allocate a unique referral code")


__all__ = [
    "LoyaltyLedger",
    "LoyaltyProfile",
    "PointsMutation",
    "RedemptionResult",
    "ReferralResult",
    "build_coupon_code",
    "build_referral_code",
]
