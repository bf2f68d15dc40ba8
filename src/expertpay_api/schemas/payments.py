"""Request and response payloads for payments, refunds and disputes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from expertpay_api.models.transaction import PaymentTransaction
from expertpay_api.services.payments import (
    DisputeResult,
    LoyaltyAwardResult,
    PaymentResult,
    RefundResult,
)

from .base import CamelModel


def _as_float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


class PaymentCreateRequest(CamelModel):
    payer_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1, description="stripe, credit_card, paypal or manual")
    recipient_id: str | None = None
    payer_email: str | None = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    payment_type: str = "product"
    is_subscriber: bool = False
    recipient_tier: str | None = None
    redeem_points: int = Field(default=0, ge=0)
    apply_tier_discount: bool = False
    referral_code: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class LoyaltyAwardResponse(CamelModel):
    success: bool
    points_awarded: int
    recipient_points: int
    tier_upgraded: bool
    new_tier: str | None = None
    already_processed: bool = False
    message: str | None = None

    @classmethod
    def from_result(cls, result: LoyaltyAwardResult) -> "LoyaltyAwardResponse":
        return cls(
            success=result.success,
            points_awarded=result.points_awarded,
            recipient_points=result.recipient_points,
            tier_upgraded=result.tier_upgraded,
            new_tier=result.new_tier,
            already_processed=result.already_processed,
            message=result.message,
        )


class PaymentResponse(CamelModel):
    transaction_id: UUID
    status: str
    amount: float
    platform_fee: float
    recipient_amount: float
    commission_rate: float
    processor: str
    processor_reference: str | None = None
    client_secret: str | None = None
    approval_url: str | None = None
    expected_points: int | None = None
    points_redeemed: int = 0
    discounts: dict[str, Any] = Field(default_factory=dict)
    loyalty: LoyaltyAwardResponse | None = None

    @classmethod
    def from_result(cls, result: PaymentResult) -> "PaymentResponse":
        return cls(
            transaction_id=result.transaction_id,
            status=result.status.value,
            amount=_as_float(result.amount),
            platform_fee=_as_float(result.platform_fee),
            recipient_amount=_as_float(result.recipient_amount),
            commission_rate=_as_float(result.commission_rate),
            processor=result.processor,
            processor_reference=result.processor_reference,
            client_secret=result.client_secret,
            approval_url=result.approval_url,
            expected_points=result.expected_points,
            points_redeemed=result.points_redeemed,
            discounts=result.discounts,
            loyalty=LoyaltyAwardResponse.from_result(result.loyalty) if result.loyalty else None,
        )


class DisputeSummary(CamelModel):
    dispute_id: str
    status: str
    reason: str | None = None
    resolution: str | None = None
    resolution_notes: str | None = None
    opened_at: datetime | None = None
    resolved_at: datetime | None = None


class TransactionResponse(CamelModel):
    id: UUID
    payer_id: str
    recipient_id: str | None = None
    status: str
    amount: float
    list_amount: float
    currency: str
    payment_type: str
    commission_rate: float
    platform_fee: float
    recipient_amount: float
    processor: str
    processor_reference: str | None = None
    points_redeemed: int
    expected_points: int | None = None
    loyalty_points_awarded: int | None = None
    loyalty_processed: bool
    refund_id: str | None = None
    refunded_amount: float | None = None
    failure_reason: str | None = None
    dispute: DisputeSummary | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_model(cls, transaction: PaymentTransaction) -> "TransactionResponse":
        dispute = None
        if transaction.dispute_id:
            dispute = DisputeSummary(
                dispute_id=transaction.dispute_id,
                status=transaction.dispute_status.value,
                reason=transaction.dispute_reason,
                resolution=transaction.dispute_resolution.value if transaction.dispute_resolution else None,
                resolution_notes=transaction.dispute_resolution_notes,
                opened_at=transaction.dispute_opened_at,
                resolved_at=transaction.dispute_resolved_at,
            )
        return cls(
            id=transaction.id,
            payer_id=transaction.payer_id,
            recipient_id=transaction.recipient_id,
            status=transaction.status.value,
            amount=float(transaction.gross_amount),
            list_amount=float(transaction.list_amount),
            currency=transaction.currency,
            payment_type=transaction.payment_type.value,
            commission_rate=float(transaction.commission_rate),
            platform_fee=float(transaction.platform_fee),
            recipient_amount=float(transaction.net_amount),
            processor=transaction.processor.value,
            processor_reference=transaction.processor_reference,
            points_redeemed=transaction.points_redeemed or 0,
            expected_points=transaction.expected_loyalty_points,
            loyalty_points_awarded=transaction.loyalty_points_awarded,
            loyalty_processed=bool(transaction.loyalty_processed),
            refund_id=transaction.refund_id,
            refunded_amount=_as_float(transaction.refunded_amount),
            failure_reason=transaction.failure_reason,
            dispute=dispute,
            created_at=transaction.created_at,
            completed_at=transaction.completed_at,
        )


class RefundCreateRequest(CamelModel):
    transaction_id: UUID
    amount: Decimal | None = Field(default=None, gt=0, description="Omit for a full refund")
    reason: str | None = None


class RefundResponse(CamelModel):
    transaction_id: UUID
    refund_id: str | None = None
    amount: float
    points_reversed: int
    status: str

    @classmethod
    def from_result(cls, result: RefundResult) -> "RefundResponse":
        return cls(
            transaction_id=result.transaction_id,
            refund_id=result.refund_id,
            amount=_as_float(result.amount),
            points_reversed=result.points_reversed,
            status=result.status.value,
        )


class DisputeCreateRequest(CamelModel):
    owner_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    evidence: dict[str, Any] | None = None


class DisputeResolveRequest(CamelModel):
    resolution: Literal["customer", "merchant"]
    notes: str | None = None


class DisputeResponse(CamelModel):
    transaction_id: UUID
    dispute_id: str | None = None
    dispute_status: str | None = None
    resolution: str | None = None
    transaction_status: str | None = None
    refund: RefundResponse | None = None

    @classmethod
    def from_result(cls, result: DisputeResult) -> "DisputeResponse":
        return cls(
            transaction_id=result.transaction_id,
            dispute_id=result.dispute_id,
            dispute_status=result.dispute_status.value if result.dispute_status else None,
            resolution=result.resolution.value if result.resolution else None,
            transaction_status=result.transaction_status.value if result.transaction_status else None,
            refund=RefundResponse.from_result(result.refund) if result.refund else None,
        )
