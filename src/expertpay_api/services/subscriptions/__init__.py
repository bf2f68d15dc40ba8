"""Subscription lifecycle services."""

from .manager import (  # noqa: F401
    SubscriptionLifecycleManager,
    SubscriptionPaymentEvent,
    SubscriptionPaymentResult,
    SubscriptionRequest,
    SubscriptionResult,
    calculate_next_billing_date,
)
