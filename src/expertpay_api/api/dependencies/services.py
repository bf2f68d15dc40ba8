"""Service wiring for request handlers.

``get_notifier`` and ``get_processors`` are the seams tests override to
swap in an in-memory email backend and stub processors.
"""

from __future__ import annotations

from typing import Mapping

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from expertpay_api.db.session import get_session
from expertpay_api.services.loyalty import LoyaltyLedger
from expertpay_api.services.notifications import NotificationGateway
from expertpay_api.services.payments import PaymentOrchestrator
from expertpay_api.services.payments.processors import PaymentProcessor
from expertpay_api.services.subscriptions import SubscriptionLifecycleManager


ERROR_STATUS: Mapping[str, int] = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "missing_parameters": status.HTTP_400_BAD_REQUEST,
    "unsupported_processor": status.HTTP_400_BAD_REQUEST,
    "invalid_referral_code": status.HTTP_400_BAD_REQUEST,
    "self_referral": status.HTTP_400_BAD_REQUEST,
    "ownership_mismatch": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "reward_not_found": status.HTTP_404_NOT_FOUND,
    "dispute_not_found": status.HTTP_404_NOT_FOUND,
    "payment_declined": status.HTTP_402_PAYMENT_REQUIRED,
    "insufficient_points": status.HTTP_409_CONFLICT,
    "invalid_state_for_refund": status.HTTP_409_CONFLICT,
    "dispute_window_expired": status.HTTP_409_CONFLICT,
    "dispute_already_resolved": status.HTTP_409_CONFLICT,
    "concurrent_modification": status.HTTP_409_CONFLICT,
    "processor_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_for_failure(result) -> None:
    """Translate a ``success=False`` service result into an HTTP error."""

    if result.success:
        return
    code = result.error_code or "validation_error"
    raise HTTPException(
        status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
        detail={"errorCode": code, "message": result.message},
    )


def get_notifier() -> NotificationGateway:
    return NotificationGateway()


def get_processors() -> Mapping[str, PaymentProcessor] | None:
    """Processor overrides keyed by name; ``None`` builds them from settings."""

    return None


def get_loyalty_ledger(session: AsyncSession = Depends(get_session)) -> LoyaltyLedger:
    return LoyaltyLedger(session)


def get_payment_orchestrator(
    session: AsyncSession = Depends(get_session),
    notifier: NotificationGateway = Depends(get_notifier),
    processors: Mapping[str, PaymentProcessor] | None = Depends(get_processors),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        session,
        ledger=LoyaltyLedger(session),
        notifier=notifier,
        processors=processors,
    )


def get_subscription_manager(
    session: AsyncSession = Depends(get_session),
    notifier: NotificationGateway = Depends(get_notifier),
    processors: Mapping[str, PaymentProcessor] | None = Depends(get_processors),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(
        session,
        notifier=notifier,
        processors=processors,
    )
