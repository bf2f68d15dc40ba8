from fastapi import APIRouter, Depends

from expertpay_api.api.dependencies.security import require_api_key
from expertpay_api.api.dependencies.services import get_payment_orchestrator, raise_for_failure
from expertpay_api.schemas.payments import RefundCreateRequest, RefundResponse
from expertpay_api.services.payments import PaymentOrchestrator


router = APIRouter(prefix="/refunds", tags=["refunds"], dependencies=[Depends(require_api_key)])


@router.post("", response_model=RefundResponse)
async def create_refund(
    request: RefundCreateRequest,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> RefundResponse:
    """Refund all or part of a payment; earned points are reversed proportionally."""

    result = await orchestrator.process_refund(request.transaction_id, request.amount, request.reason)
    raise_for_failure(result)
    return RefundResponse.from_result(result)
