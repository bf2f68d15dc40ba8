"""Subscription payloads."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from expertpay_api.models.subscription import Subscription
from expertpay_api.services.subscriptions import SubscriptionPaymentResult, SubscriptionResult

from .base import CamelModel


class SubscriptionCreateRequest(CamelModel):
    owner_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    plan_name: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    processor: str = Field(..., description="stripe, paypal or manual")
    payment_method_id: str = Field(..., min_length=1)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    interval: str = "month"
    trial_days: int = Field(default=0, ge=0)
    owner_email: str | None = None
    apply_loyalty_discount: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionUpdateRequest(CamelModel):
    owner_id: str = Field(..., min_length=1)
    plan_id: str | None = None
    plan_name: str | None = None
    amount: Decimal | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    interval: str | None = None


class SubscriptionCancelRequest(CamelModel):
    owner_id: str = Field(..., min_length=1)
    immediate: bool = False
    reason: str | None = None


class SubscriptionPaymentRequest(CamelModel):
    processor_subscription_id: str = Field(..., min_length=1)
    invoice_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    status: Literal["paid", "failed"]
    processor: str | None = None
    payment_date: datetime | None = None
    failure_reason: str | None = None


class InvoiceResponse(CamelModel):
    invoice_id: str
    amount: float
    status: str
    paid_at: datetime
    failure_reason: str | None = None
    transaction_id: UUID | None = None


class SubscriptionResponse(CamelModel):
    subscription_id: UUID
    status: str
    amount: float
    interval: str
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    client_secret: str | None = None
    tier_discount_rate: float | None = None
    message: str | None = None

    @classmethod
    def from_result(cls, result: SubscriptionResult) -> "SubscriptionResponse":
        return cls(
            subscription_id=result.subscription_id,
            status=result.status.value,
            amount=float(result.amount),
            interval=result.interval.value,
            current_period_start=result.current_period_start,
            current_period_end=result.current_period_end,
            next_billing_date=result.next_billing_date,
            cancel_at_period_end=result.cancel_at_period_end,
            canceled_at=result.canceled_at,
            client_secret=result.client_secret,
            tier_discount_rate=float(result.tier_discount_rate) if result.tier_discount_rate is not None else None,
            message=result.message,
        )


class SubscriptionDetailResponse(CamelModel):
    id: UUID
    owner_id: str
    plan_id: str
    plan_name: str
    amount: float
    currency: str
    interval: str
    status: str
    processor: str
    processor_subscription_id: str
    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None = None
    next_billing_date: datetime
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    last_payment_date: datetime | None = None
    invoices: list[InvoiceResponse] = Field(default_factory=list)

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionDetailResponse":
        return cls(
            id=subscription.id,
            owner_id=subscription.owner_id,
            plan_id=subscription.plan_id,
            plan_name=subscription.plan_name,
            amount=float(subscription.amount),
            currency=subscription.currency,
            interval=subscription.interval.value,
            status=subscription.status.value,
            processor=subscription.processor,
            processor_subscription_id=subscription.processor_subscription_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            next_billing_date=subscription.next_billing_date,
            cancel_at_period_end=bool(subscription.cancel_at_period_end),
            canceled_at=subscription.canceled_at,
            last_payment_date=subscription.last_payment_date,
            invoices=[
                InvoiceResponse(
                    invoice_id=invoice.invoice_id,
                    amount=float(invoice.amount),
                    status=invoice.status.value,
                    paid_at=invoice.paid_at,
                    failure_reason=invoice.failure_reason,
                    transaction_id=invoice.transaction_id,
                )
                for invoice in subscription.invoices
            ],
        )


class SubscriptionPaymentResponse(CamelModel):
    status: str
    subscription_id: UUID | None = None
    invoice_id: str | None = None
    transaction_id: UUID | None = None
    points_awarded: int = 0

    @classmethod
    def from_result(cls, result: SubscriptionPaymentResult) -> "SubscriptionPaymentResponse":
        return cls(
            status=result.status,
            subscription_id=result.subscription_id,
            invoice_id=result.invoice_id,
            transaction_id=result.transaction_id,
            points_awarded=result.points_awarded,
        )
