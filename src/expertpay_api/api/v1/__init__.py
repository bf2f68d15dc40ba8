from fastapi import APIRouter

from .endpoints import health, loyalty, payments, refunds, subscriptions

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(payments.router)
router.include_router(refunds.router)
router.include_router(subscriptions.router)
router.include_router(loyalty.router)
