from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from expertpay_api.api.dependencies.security import require_api_key
from expertpay_api.api.dependencies.services import get_payment_orchestrator, raise_for_failure
from expertpay_api.schemas.payments import (
    DisputeCreateRequest,
    DisputeResolveRequest,
    DisputeResponse,
    PaymentCreateRequest,
    PaymentResponse,
    TransactionResponse,
)
from expertpay_api.services.payments import PaymentDetails, PaymentOrchestrator


router = APIRouter(prefix="/payments", tags=["payments"], dependencies=[Depends(require_api_key)])


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    request: PaymentCreateRequest,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> PaymentResponse:
    """Price and authorize a payment with the processor matching ``paymentMethod``."""

    result = await orchestrator.process_payment(
        PaymentDetails(
            payer_id=request.payer_id,
            amount=request.amount,
            payment_method=request.payment_method,
            recipient_id=request.recipient_id,
            payer_email=request.payer_email,
            currency=request.currency,
            payment_type=request.payment_type,
            is_subscriber=request.is_subscriber,
            recipient_tier=request.recipient_tier,
            redeem_points=request.redeem_points,
            apply_tier_discount=request.apply_tier_discount,
            referral_code=request.referral_code,
            description=request.description,
            metadata=request.metadata,
        )
    )
    raise_for_failure(result)
    return PaymentResponse.from_result(result)


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_payment(
    transaction_id: UUID,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> TransactionResponse:
    transaction = await orchestrator.get_transaction(transaction_id)
    if transaction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return TransactionResponse.from_model(transaction)


@router.post("/{transaction_id}/capture", response_model=PaymentResponse)
async def capture_payment(
    transaction_id: UUID,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> PaymentResponse:
    result = await orchestrator.capture_payment(transaction_id)
    raise_for_failure(result)
    return PaymentResponse.from_result(result)


@router.post("/{transaction_id}/complete", response_model=PaymentResponse)
async def complete_payment(
    transaction_id: UUID,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> PaymentResponse:
    """Mark the payment completed and award the payer's loyalty points."""

    result = await orchestrator.complete_payment(transaction_id)
    raise_for_failure(result)
    return PaymentResponse.from_result(result)


@router.post(
    "/{transaction_id}/disputes",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def open_dispute(
    transaction_id: UUID,
    request: DisputeCreateRequest,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> DisputeResponse:
    result = await orchestrator.create_dispute(
        transaction_id,
        request.owner_id,
        request.reason,
        request.evidence,
    )
    raise_for_failure(result)
    return DisputeResponse.from_result(result)


@router.post("/{transaction_id}/disputes/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    transaction_id: UUID,
    request: DisputeResolveRequest,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> DisputeResponse:
    result = await orchestrator.resolve_dispute(transaction_id, request.resolution, request.notes)
    raise_for_failure(result)
    return DisputeResponse.from_result(result)
