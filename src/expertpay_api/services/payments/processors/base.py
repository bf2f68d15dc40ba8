"""Processor-agnostic payment interface and its result payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Protocol, runtime_checkable


@dataclass(slots=True)
class ProcessorPayment:
    """Result of creating a payment intent or order."""

    id: str
    status: str
    client_secret: str | None = None
    approval_url: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessorCapture:
    payment_id: str
    status: str
    capture_id: str | None = None
    captured_at: datetime | None = None


@dataclass(slots=True)
class ProcessorRefund:
    refund_id: str
    amount: Decimal
    status: str


@dataclass(slots=True)
class ProcessorSubscription:
    id: str
    status: str
    customer_id: str | None = None
    client_secret: str | None = None


@runtime_checkable
class PaymentProcessor(Protocol):
    """Money movement capability implemented by Stripe, PayPal and manual settlement."""

    name: str

    async def create_payment(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
        payment_method: str | None = None,
        customer_email: str | None = None,
    ) -> ProcessorPayment:
        ...

    async def capture(self, payment_id: str, *, idempotency_key: str) -> ProcessorCapture:
        ...

    async def refund(
        self,
        payment_id: str,
        amount: Decimal,
        *,
        idempotency_key: str,
        currency: str = "USD",
        reason: str | None = None,
    ) -> ProcessorRefund:
        ...

    async def create_subscription(
        self,
        *,
        customer_email: str | None,
        plan_id: str,
        plan_name: str,
        amount: Decimal,
        currency: str,
        interval: str,
        payment_method_id: str,
        trial_days: int,
        metadata: Mapping[str, str],
    ) -> ProcessorSubscription:
        ...

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        plan_id: str | None = None,
        amount: Decimal | None = None,
        interval: str | None = None,
    ) -> None:
        ...

    async def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> None:
        ...


__all__ = [
    "PaymentProcessor",
    "ProcessorCapture",
    "ProcessorPayment",
    "ProcessorRefund",
    "ProcessorSubscription",
]
