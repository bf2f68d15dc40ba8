"""Loyalty account, point history, redemption and referral models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from expertpay_api.db.base import Base


class LoyaltyTierEnum(str, Enum):
    """Loyalty ranks ordered by ascending point threshold."""

    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class LoyaltyAccount(Base):
    """Point balance and tier for one owner (client or expert)."""

    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        UniqueConstraint("owner_id", name="uq_loyalty_accounts_owner_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(String, nullable=False, index=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_points = Column(Integer, nullable=False, default=0, server_default="0")
    tier = Column(
        SqlEnum(LoyaltyTierEnum, name="loyalty_tier_enum"),
        nullable=False,
        default=LoyaltyTierEnum.BRONZE,
        server_default=LoyaltyTierEnum.BRONZE.value,
    )
    referral_code = Column(String, nullable=False, unique=True, index=True)
    # Incremented by every balance mutation; balance writes compare-and-swap on it.
    version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    point_entries = relationship(
        "LoyaltyPointEntry",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="LoyaltyPointEntry.sequence",
    )
    redemptions = relationship(
        "LoyaltyRedemption", back_populates="account", cascade="all, delete-orphan"
    )
    referrals = relationship(
        "LoyaltyReferral", back_populates="referrer", cascade="all, delete-orphan"
    )


class LoyaltyPointEntry(Base):
    """Append-only record of a signed point delta."""

    __tablename__ = "loyalty_point_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_loyalty_point_entries_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False
    )
    sequence = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    requested_delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    reference = Column(String, nullable=True)
    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="point_entries")


class LoyaltyRedemption(Base):
    """Reward redeemed from the static catalog."""

    __tablename__ = "loyalty_redemptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False
    )
    reward_id = Column(String, nullable=False)
    points_cost = Column(Integer, nullable=False)
    coupon_code = Column(String, nullable=False, index=True)
    used = Column(Boolean, nullable=False, default=False, server_default="false")
    redeemed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="redemptions")


class LoyaltyReferral(Base):
    """Converted referral; one row per (referrer, referred owner) pair."""

    __tablename__ = "loyalty_referrals"
    __table_args__ = (
        UniqueConstraint("referrer_account_id", "referred_owner_id", name="uq_loyalty_referrals_pair"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False
    )
    referred_owner_id = Column(String, nullable=False)
    reference = Column(String, nullable=True)
    referrer_points = Column(Integer, nullable=False)
    referee_points = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    referrer = relationship("LoyaltyAccount", back_populates="referrals")
