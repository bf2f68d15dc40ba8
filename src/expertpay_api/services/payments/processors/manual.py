"""Out-of-band settlement: bank transfers, invoices paid offline, test payments."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping
from uuid import uuid4

from expertpay_api.services.payments.processors.base import (
    ProcessorCapture,
    ProcessorPayment,
    ProcessorRefund,
    ProcessorSubscription,
)


def _synthetic_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class ManualProcessor:
    """Issues synthetic references; money moves outside the platform."""

    name = "manual"

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
        return ProcessorPayment(id=_synthetic_id("manual"), status="authorized")

    async def capture(self, payment_id: str, *, idempotency_key: str) -> ProcessorCapture:
        return ProcessorCapture(
            payment_id=payment_id,
            status="captured",
            capture_id=payment_id,
            captured_at=datetime.now(timezone.utc),
        )

    async def refund(
        self,
        payment_id: str,
        amount: Decimal,
        *,
        idempotency_key: str,
        currency: str = "USD",
        reason: str | None = None,
    ) -> ProcessorRefund:
        return ProcessorRefund(refund_id=_synthetic_id("manual_refund"), amount=Decimal(amount), status="succeeded")

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
        return ProcessorSubscription(id=_synthetic_id("manual_sub"), status="active")

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        plan_id: str | None = None,
        amount: Decimal | None = None,
        interval: str | None = None,
    ) -> None:
        return None

    async def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> None:
        return None


__all__ = ["ManualProcessor"]
