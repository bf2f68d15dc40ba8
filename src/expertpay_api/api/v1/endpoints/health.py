from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from expertpay_api.core.settings import settings
from expertpay_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(session: AsyncSession = Depends(get_session)) -> ReadinessPayload:
    components: dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as error:
        logger.exception("Database readiness probe failed")
        components["database"] = ComponentStatus(status="error", detail=str(error))
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    components["stripe"] = (
        ComponentStatus(status="ready")
        if settings.stripe_secret_key
        else ComponentStatus(status="disabled", detail="Stripe secret key not configured")
    )
    components["paypal"] = (
        ComponentStatus(status="ready")
        if settings.paypal_client_id and settings.paypal_secret
        else ComponentStatus(status="disabled", detail="PayPal credentials not configured")
    )
    components["email"] = (
        ComponentStatus(status="ready")
        if settings.smtp_host and settings.smtp_sender_email
        else ComponentStatus(status="disabled", detail="SMTP not configured; notifications are skipped")
    )

    return ReadinessPayload(status=status, components=components)
