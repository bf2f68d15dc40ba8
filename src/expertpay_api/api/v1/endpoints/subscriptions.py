"""Subscription lifecycle endpoints and the billing event hook."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from expertpay_api.api.dependencies.security import require_api_key
from expertpay_api.api.dependencies.services import get_subscription_manager, raise_for_failure
from expertpay_api.schemas.subscriptions import (
    SubscriptionCancelRequest,
    SubscriptionCreateRequest,
    SubscriptionDetailResponse,
    SubscriptionPaymentRequest,
    SubscriptionPaymentResponse,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
)
from expertpay_api.services.subscriptions import (
    SubscriptionLifecycleManager,
    SubscriptionPaymentEvent,
    SubscriptionRequest,
)


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"], dependencies=[Depends(require_api_key)])


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: SubscriptionCreateRequest,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> SubscriptionResponse:
    result = await manager.create_subscription(
        SubscriptionRequest(
            owner_id=request.owner_id,
            plan_id=request.plan_id,
            plan_name=request.plan_name,
            amount=request.amount,
            processor_name=request.processor,
            payment_method_id=request.payment_method_id,
            currency=request.currency,
            interval=request.interval,
            trial_days=request.trial_days,
            owner_email=request.owner_email,
            apply_loyalty_discount=request.apply_loyalty_discount,
            metadata=request.metadata,
        )
    )
    raise_for_failure(result)
    return SubscriptionResponse.from_result(result)


@router.get("", response_model=list[SubscriptionDetailResponse])
async def list_subscriptions(
    owner_id: str,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> list[SubscriptionDetailResponse]:
    subscriptions = await manager.list_owner_subscriptions(owner_id)
    return [SubscriptionDetailResponse.from_model(subscription) for subscription in subscriptions]


# Declared before "/{subscription_id}" so the literal path wins.
@router.post("/payments", response_model=SubscriptionPaymentResponse)
async def record_subscription_payment(
    request: SubscriptionPaymentRequest,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> SubscriptionPaymentResponse:
    """Apply a processor billing event; replays of the same invoice are no-ops."""

    result = await manager.process_subscription_payment(
        SubscriptionPaymentEvent(
            processor_subscription_id=request.processor_subscription_id,
            invoice_id=request.invoice_id,
            amount=request.amount,
            status=request.status,
            processor_name=request.processor,
            payment_date=request.payment_date,
            failure_reason=request.failure_reason,
        )
    )
    raise_for_failure(result)
    return SubscriptionPaymentResponse.from_result(result)


@router.get("/{subscription_id}", response_model=SubscriptionDetailResponse)
async def get_subscription(
    subscription_id: UUID,
    owner_id: str | None = None,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> SubscriptionDetailResponse:
    subscription = await manager.get_subscription(subscription_id, owner_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return SubscriptionDetailResponse.from_model(subscription)


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: UUID,
    request: SubscriptionUpdateRequest,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> SubscriptionResponse:
    result = await manager.update_subscription(
        subscription_id,
        request.owner_id,
        plan_id=request.plan_id,
        plan_name=request.plan_name,
        amount=request.amount,
        currency=request.currency,
        interval=request.interval,
    )
    raise_for_failure(result)
    return SubscriptionResponse.from_result(result)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    request: SubscriptionCancelRequest,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> SubscriptionResponse:
    result = await manager.cancel_subscription(
        subscription_id,
        request.owner_id,
        immediate=request.immediate,
        reason=request.reason,
    )
    raise_for_failure(result)
    return SubscriptionResponse.from_result(result)
