"""Stripe adapter for the payment processor interface."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

import stripe

from expertpay_api.core.errors import PaymentDeclined, ProcessorUnavailable
from expertpay_api.core.settings import settings
from expertpay_api.services.payments.processors.base import (
    ProcessorCapture,
    ProcessorPayment,
    ProcessorRefund,
    ProcessorSubscription,
)


class StripeProcessor:
    """Thin asynchronous wrapper around the official Stripe SDK.

    Intents are created with manual capture so funds stay authorized until the
    orchestrator captures them.
    """

    name = "stripe"

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ProcessorUnavailable("Stripe is not configured", transient=False)
        self._secret_key = secret_key
        stripe.api_key = secret_key

    @classmethod
    def from_settings(cls) -> "StripeProcessor":
        return cls(settings.stripe_secret_key)

    async def _run(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Execute a blocking SDK call in a worker thread and normalise its errors."""

        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.CardError as exc:
            raise PaymentDeclined(exc.user_message or str(exc)) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise ProcessorUnavailable(f"Stripe unavailable: {exc}") from exc
        except stripe.APIError as exc:
            raise ProcessorUnavailable(f"Stripe error: {exc}") from exc
        except stripe.StripeError as exc:
            raise ProcessorUnavailable(f"Stripe rejected the request: {exc}", transient=False) from exc

    @staticmethod
    def _to_cents(amount: Decimal) -> int:
        quantized = Decimal(amount).quantize(Decimal("0.01"))
        return int((quantized * 100).to_integral_value())

    @staticmethod
    def _from_cents(amount: int) -> Decimal:
        return Decimal(amount) / Decimal(100)

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
        payload: dict[str, Any] = {
            "amount": self._to_cents(amount),
            "currency": currency.lower(),
            "metadata": dict(metadata),
            "capture_method": "manual",
            "idempotency_key": idempotency_key,
        }
        if customer_email:
            payload["receipt_email"] = customer_email
        if payment_method and payment_method.startswith("pm_"):
            payload["payment_method"] = payment_method

        intent = await self._run(stripe.PaymentIntent.create, **payload)
        return ProcessorPayment(
            id=intent["id"],
            status=str(intent.get("status", "requires_payment_method")),
            client_secret=intent.get("client_secret"),
            raw=intent,
        )

    async def capture(self, payment_id: str, *, idempotency_key: str) -> ProcessorCapture:
        intent = await self._run(
            stripe.PaymentIntent.capture,
            payment_id,
            idempotency_key=idempotency_key,
        )
        charge_id = intent.get("latest_charge")
        return ProcessorCapture(
            payment_id=intent["id"],
            status=str(intent.get("status", "succeeded")),
            capture_id=str(charge_id) if charge_id else None,
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
        refund = await self._run(
            stripe.Refund.create,
            payment_intent=payment_id,
            amount=self._to_cents(amount),
            reason="requested_by_customer",
            metadata={"reason": reason or ""},
            idempotency_key=idempotency_key,
        )
        return ProcessorRefund(
            refund_id=refund["id"],
            amount=self._from_cents(int(refund.get("amount", self._to_cents(amount)))),
            status=str(refund.get("status", "succeeded")),
        )

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
        customer = await self._run(
            stripe.Customer.create,
            email=customer_email,
            payment_method=payment_method_id,
            invoice_settings={"default_payment_method": payment_method_id},
            metadata=dict(metadata),
        )
        product = await self._run(stripe.Product.create, name=f"{plan_name} Subscription")
        payload: dict[str, Any] = {
            "customer": customer["id"],
            "items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product": product["id"],
                        "unit_amount": self._to_cents(amount),
                        "recurring": {"interval": interval},
                    }
                }
            ],
            "metadata": {**dict(metadata), "plan_id": plan_id},
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_days > 0:
            payload["trial_period_days"] = trial_days

        subscription = await self._run(stripe.Subscription.create, **payload)
        client_secret = None
        latest_invoice = subscription.get("latest_invoice") or {}
        if isinstance(latest_invoice, Mapping):
            intent = latest_invoice.get("payment_intent") or {}
            if isinstance(intent, Mapping):
                client_secret = intent.get("client_secret")
        return ProcessorSubscription(
            id=subscription["id"],
            status=str(subscription.get("status", "incomplete")),
            customer_id=customer["id"],
            client_secret=client_secret,
        )

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        plan_id: str | None = None,
        amount: Decimal | None = None,
        interval: str | None = None,
    ) -> None:
        params: dict[str, Any] = {}
        if plan_id:
            params["metadata"] = {"plan_id": plan_id}
        if amount is not None or interval is not None:
            current = await self._run(stripe.Subscription.retrieve, subscription_id)
            item = current["items"]["data"][0]
            price = item["price"]
            params["items"] = [
                {
                    "id": item["id"],
                    "price_data": {
                        "currency": price["currency"],
                        "product": price["product"],
                        "unit_amount": self._to_cents(amount) if amount is not None else price["unit_amount"],
                        "recurring": {"interval": interval or price["recurring"]["interval"]},
                    },
                }
            ]
            params["proration_behavior"] = "create_prorations"
        if params:
            await self._run(stripe.Subscription.modify, subscription_id, **params)

    async def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> None:
        if immediate:
            await self._run(stripe.Subscription.cancel, subscription_id)
        else:
            await self._run(stripe.Subscription.modify, subscription_id, cancel_at_period_end=True)


__all__ = ["StripeProcessor"]
