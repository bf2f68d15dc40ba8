from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from expertpay_api.db.base import Base


class SubscriptionStatusEnum(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingIntervalEnum(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class InvoiceStatusEnum(str, Enum):
    PAID = "paid"
    FAILED = "failed"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(String, nullable=False, index=True)
    owner_email = Column(String, nullable=True)
    plan_id = Column(String, nullable=False)
    plan_name = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    interval = Column(
        SqlEnum(BillingIntervalEnum, name="billing_interval_enum"),
        nullable=False,
        default=BillingIntervalEnum.MONTH,
    )
    status = Column(
        SqlEnum(SubscriptionStatusEnum, name="subscription_status_enum"),
        nullable=False,
        default=SubscriptionStatusEnum.ACTIVE,
    )
    processor = Column(String, nullable=False)
    processor_subscription_id = Column(String, nullable=False, unique=True, index=True)
    processor_customer_id = Column(String, nullable=True)
    payment_method_id = Column(String, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False, server_default="false")
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    invoices = relationship(
        "SubscriptionInvoice",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionInvoice.created_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}


class SubscriptionInvoice(Base):
    """Append-only billing event; invoice ids are unique per subscription."""

    __tablename__ = "subscription_invoices"
    __table_args__ = (
        UniqueConstraint("subscription_id", "invoice_id", name="uq_subscription_invoices_invoice"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_id = Column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    invoice_id = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SqlEnum(InvoiceStatusEnum, name="invoice_status_enum"), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=False)
    failure_reason = Column(Text, nullable=True)
    transaction_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    subscription = relationship("Subscription", back_populates="invoices")
