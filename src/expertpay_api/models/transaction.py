from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from expertpay_api.db.base import Base


class TransactionStatusEnum(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    COMPLETED = "completed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    FAILED = "failed"


class PaymentTypeEnum(str, Enum):
    PRODUCT = "product"
    SERVICE = "service"
    BUNDLE = "bundle"
    SUBSCRIPTION = "subscription"


class ProcessorNameEnum(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    MANUAL = "manual"


class DisputeStatusEnum(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class DisputeResolutionEnum(str, Enum):
    CUSTOMER = "customer"
    MERCHANT = "merchant"


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    payer_id = Column(String, nullable=False, index=True)
    payer_email = Column(String, nullable=True)
    recipient_id = Column(String, nullable=True, index=True)
    gross_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    payment_type = Column(
        SqlEnum(PaymentTypeEnum, name="payment_type_enum"),
        nullable=False,
        default=PaymentTypeEnum.PRODUCT,
    )
    commission_rate = Column(Numeric(5, 4), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(
        SqlEnum(TransactionStatusEnum, name="transaction_status_enum"),
        nullable=False,
        default=TransactionStatusEnum.PENDING,
        server_default=TransactionStatusEnum.PENDING.value,
    )
    processor = Column(
        SqlEnum(ProcessorNameEnum, name="processor_name_enum"),
        nullable=False,
        default=ProcessorNameEnum.MANUAL,
    )
    payment_method = Column(String, nullable=False)
    processor_reference = Column(String, nullable=True, unique=True)
    processor_capture_id = Column(String, nullable=True)
    subscription_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    # Original amount before loyalty discounts; gross_amount is what was charged.
    list_amount = Column(Numeric(12, 2), nullable=False)
    discounts_json = Column("discounts", JSON, nullable=True)
    points_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    expected_loyalty_points = Column(Integer, nullable=True)
    loyalty_points_awarded = Column(Integer, nullable=True)
    loyalty_processed = Column(Boolean, nullable=False, default=False, server_default="false")
    referral_code = Column(String, nullable=True)
    previous_status = Column(SqlEnum(TransactionStatusEnum, name="transaction_status_enum"), nullable=True)
    failure_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    dispute_id = Column(String, nullable=True, unique=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_evidence = Column(JSON, nullable=True)
    dispute_status = Column(SqlEnum(DisputeStatusEnum, name="dispute_status_enum"), nullable=True)
    dispute_resolution = Column(SqlEnum(DisputeResolutionEnum, name="dispute_resolution_enum"), nullable=True)
    dispute_resolution_notes = Column(Text, nullable=True)
    dispute_opened_at = Column(DateTime(timezone=True), nullable=True)
    dispute_resolved_at = Column(DateTime(timezone=True), nullable=True)

    refund_id = Column(String, nullable=True)
    refunded_amount = Column(Numeric(12, 2), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
