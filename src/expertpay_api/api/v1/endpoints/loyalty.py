"""Loyalty profile, reward redemption and referral endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from expertpay_api.api.dependencies.security import require_api_key
from expertpay_api.api.dependencies.services import ERROR_STATUS, get_loyalty_ledger
from expertpay_api.core.errors import OrchestrationError
from expertpay_api.schemas.loyalty import (
    LoyaltyProfileResponse,
    RedemptionRequest,
    RedemptionResponse,
    ReferralRequest,
    ReferralResponse,
    RewardResponse,
)
from expertpay_api.services.loyalty import REWARDS, LoyaltyLedger


router = APIRouter(prefix="/loyalty", tags=["loyalty"], dependencies=[Depends(require_api_key)])


def _http_error(exc: OrchestrationError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
        detail={"errorCode": exc.code, "message": exc.message},
    )


@router.get("/rewards", response_model=list[RewardResponse])
async def list_rewards() -> list[RewardResponse]:
    return [RewardResponse.from_reward(reward) for reward in REWARDS]


@router.get("/accounts/{owner_id}", response_model=LoyaltyProfileResponse)
async def get_loyalty_account(
    owner_id: str,
    ledger: LoyaltyLedger = Depends(get_loyalty_ledger),
) -> LoyaltyProfileResponse:
    try:
        profile = await ledger.get_profile(owner_id)
    except OrchestrationError as exc:
        raise _http_error(exc) from exc
    return LoyaltyProfileResponse.from_profile(profile)


@router.post(
    "/accounts/{owner_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_reward(
    owner_id: str,
    request: RedemptionRequest,
    ledger: LoyaltyLedger = Depends(get_loyalty_ledger),
) -> RedemptionResponse:
    try:
        result = await ledger.redeem_reward(owner_id, request.reward_id)
    except OrchestrationError as exc:
        logger.warning("Redemption rejected", owner_id=owner_id, error_code=exc.code)
        raise _http_error(exc) from exc
    return RedemptionResponse.from_result(result)


@router.post("/referrals", response_model=ReferralResponse)
async def apply_referral(
    request: ReferralRequest,
    ledger: LoyaltyLedger = Depends(get_loyalty_ledger),
) -> ReferralResponse:
    try:
        result = await ledger.process_referral(request.referral_code, request.new_owner_id, request.reference)
    except OrchestrationError as exc:
        logger.warning("Referral rejected", new_owner_id=request.new_owner_id, error_code=exc.code)
        raise _http_error(exc) from exc
    return ReferralResponse.from_result(result)
