"""Payment processor adapters and the factory that selects between them."""

from __future__ import annotations

from typing import Mapping

from expertpay_api.core.errors import UnsupportedProcessor

from .base import (
    PaymentProcessor,
    ProcessorCapture,
    ProcessorPayment,
    ProcessorRefund,
    ProcessorSubscription,
)
from .manual import ManualProcessor
from .paypal import PayPalProcessor
from .retry import RetryPolicy, call_processor
from .stripe import StripeProcessor


STRIPE_METHODS = frozenset({"stripe", "credit_card"})


def _build(name: str) -> PaymentProcessor:
    if name == "stripe":
        return StripeProcessor.from_settings()
    if name == "paypal":
        return PayPalProcessor.from_settings()
    return ManualProcessor()


def processor_name_for_method(payment_method: str | None) -> str:
    """Map a payment method string to the processor that settles it."""

    method = (payment_method or "").strip().lower()
    if method in STRIPE_METHODS:
        return "stripe"
    if method == "paypal":
        return "paypal"
    return "manual"


def get_processor(
    payment_method: str | None,
    overrides: Mapping[str, PaymentProcessor] | None = None,
) -> PaymentProcessor:
    name = processor_name_for_method(payment_method)
    if overrides and name in overrides:
        return overrides[name]
    return _build(name)


def get_subscription_processor(
    processor_name: str,
    overrides: Mapping[str, PaymentProcessor] | None = None,
) -> PaymentProcessor:
    """Subscriptions name their processor explicitly; unknown names are rejected."""

    name = (processor_name or "").strip().lower()
    if name in STRIPE_METHODS:
        name = "stripe"
    if name not in {"stripe", "paypal", "manual"}:
        raise UnsupportedProcessor(f"Unsupported payment processor: {processor_name}")
    if overrides and name in overrides:
        return overrides[name]
    return _build(name)


__all__ = [
    "ManualProcessor",
    "PayPalProcessor",
    "PaymentProcessor",
    "ProcessorCapture",
    "ProcessorPayment",
    "ProcessorRefund",
    "ProcessorSubscription",
    "RetryPolicy",
    "StripeProcessor",
    "call_processor",
    "get_processor",
    "get_subscription_processor",
    "processor_name_for_method",
]
