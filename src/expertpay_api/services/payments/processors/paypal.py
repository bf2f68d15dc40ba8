"""PayPal REST v2 adapter built on httpx."""

from __future__ import annotations

import time
from decimal import Decimal
from typing import Any, Mapping
from uuid import uuid4

import httpx
from loguru import logger

from expertpay_api.core.errors import PaymentDeclined, ProcessorUnavailable
from expertpay_api.core.settings import settings
from expertpay_api.services.payments.processors.base import (
    ProcessorCapture,
    ProcessorPayment,
    ProcessorRefund,
    ProcessorSubscription,
)


SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"


class PayPalProcessor:
    """Orders are created with intent CAPTURE and captured once the buyer approves.

    PayPal billing plans are not wired up; subscriptions get synthetic ids and
    are billed through ``process_subscription_payment`` events.
    """

    name = "paypal"

    def __init__(
        self,
        client_id: str,
        secret: str,
        *,
        sandbox: bool = True,
        brand_name: str = "Expert Chat System",
        app_url: str = "http://localhost:8000",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._base_url = SANDBOX_BASE_URL if sandbox else LIVE_BASE_URL
        self._brand_name = brand_name
        self._app_url = app_url.rstrip("/")
        self._transport = transport
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls) -> "PayPalProcessor":
        return cls(
            settings.paypal_client_id,
            settings.paypal_secret,
            sandbox=settings.paypal_sandbox,
            brand_name=settings.paypal_brand_name,
            app_url=settings.app_url,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=settings.processor_timeout_seconds,
            transport=self._transport,
        )

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self._client_id or not self._secret:
            raise ProcessorUnavailable("PayPal is not configured", transient=False)

        response = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._secret),
        )
        self._raise_for_status(response)
        payload = response.json()
        self._access_token = payload["access_token"]
        # Refresh a minute early.
        self._token_expires_at = time.monotonic() + max(int(payload.get("expires_in", 0)) - 60, 0)
        return self._access_token

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        detail = response.text[:500]
        if response.status_code == 422:
            raise PaymentDeclined(f"PayPal declined the request: {detail}")
        if response.status_code in {408, 429} or response.status_code >= 500:
            raise ProcessorUnavailable(f"PayPal unavailable ({response.status_code}): {detail}")
        raise ProcessorUnavailable(f"PayPal rejected the request ({response.status_code}): {detail}", transient=False)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        async with self._client() as client:
            token = await self._get_access_token(client)
            headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
            if idempotency_key:
                headers["PayPal-Request-Id"] = idempotency_key
            response = await client.request(method, path, json=json, headers=headers)
            self._raise_for_status(response)
            return response.json() if response.content else {}

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
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {"currency_code": currency.upper(), "value": f"{Decimal(amount):.2f}"},
                    "reference_id": metadata.get("transaction_id"),
                    "description": metadata.get("description", "Order payment"),
                }
            ],
            "application_context": {
                "brand_name": self._brand_name,
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
                "return_url": f"{self._app_url}/api/v1/payments/paypal/capture",
                "cancel_url": f"{self._app_url}/checkout",
            },
        }
        order = await self._request("POST", "/v2/checkout/orders", json=payload, idempotency_key=idempotency_key)
        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return ProcessorPayment(
            id=order["id"],
            status=str(order.get("status", "CREATED")),
            approval_url=approval_url,
            raw=order,
        )

    async def capture(self, payment_id: str, *, idempotency_key: str) -> ProcessorCapture:
        order = await self._request(
            "POST",
            f"/v2/checkout/orders/{payment_id}/capture",
            idempotency_key=idempotency_key,
        )
        capture_id = None
        units = order.get("purchase_units") or []
        if units:
            captures = (units[0].get("payments") or {}).get("captures") or []
            if captures:
                capture_id = captures[0].get("id")
        return ProcessorCapture(
            payment_id=order.get("id", payment_id),
            status=str(order.get("status", "COMPLETED")),
            capture_id=capture_id,
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
        """Refund a capture; ``payment_id`` must be the PayPal capture id."""

        payload: dict[str, Any] = {
            "amount": {"value": f"{Decimal(amount):.2f}", "currency_code": currency.upper()},
        }
        if reason:
            payload["note_to_payer"] = reason[:255]
        refund = await self._request(
            "POST",
            f"/v2/payments/captures/{payment_id}/refund",
            json=payload,
            idempotency_key=idempotency_key,
        )
        return ProcessorRefund(
            refund_id=refund["id"],
            amount=Decimal(str((refund.get("amount") or {}).get("value", amount))),
            status=str(refund.get("status", "COMPLETED")),
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
        subscription_id = f"paypal_sub_{int(time.time() * 1000)}_{uuid4().hex[:6]}"
        logger.info("Issued synthetic PayPal subscription", subscription_id=subscription_id, plan_id=plan_id)
        return ProcessorSubscription(id=subscription_id, status="active")

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        plan_id: str | None = None,
        amount: Decimal | None = None,
        interval: str | None = None,
    ) -> None:
        logger.info("PayPal subscription updated locally", subscription_id=subscription_id)

    async def cancel_subscription(self, subscription_id: str, *, immediate: bool) -> None:
        logger.info("PayPal subscription canceled locally", subscription_id=subscription_id, immediate=immediate)


__all__ = ["PayPalProcessor"]
