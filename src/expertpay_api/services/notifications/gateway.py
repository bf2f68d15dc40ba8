"""Notification gateway consumed by the payment and subscription services."""

from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Mapping, Optional

from loguru import logger

from expertpay_api.core.settings import get_settings
from expertpay_api.services.notifications.backend import EmailBackend, SMTPEmailBackend


SUBJECTS: Mapping[str, str] = {
    "payment_confirmation": "Payment confirmation",
    "refund_confirmation": "Your refund has been processed",
    "dispute_opened": "We received your dispute",
    "dispute_resolved": "Your dispute has been resolved",
    "subscription_confirmation": "Your subscription is active",
    "subscription_updated": "Your subscription has been updated",
    "subscription_canceled": "Your subscription has been canceled",
    "subscription_payment_success": "Subscription payment received",
    "subscription_payment_failed": "Subscription payment failed",
}


@dataclass(slots=True)
class NotificationDelivery:
    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationGateway:
    """Renders a plain-text email per notification type and hands it to a backend.

    ``send`` never raises: a missing backend or a delivery failure is logged and
    reported through ``NotificationDelivery.success``.
    """

    def __init__(self, backend: EmailBackend | None = None) -> None:
        self._backend = backend if backend is not None else self._build_default_backend()

    async def send(
        self,
        recipient_email: str | None,
        notification_type: str,
        data: Mapping[str, Any] | None = None,
    ) -> NotificationDelivery:
        if not recipient_email:
            logger.info("Skipping notification without recipient", notification_type=notification_type)
            return NotificationDelivery(success=False, error="missing_recipient")
        if self._backend is None:
            logger.info(
                "Email backend not configured; notification skipped",
                notification_type=notification_type,
            )
            return NotificationDelivery(success=False, error="backend_not_configured")

        message = self._render(recipient_email, notification_type, data or {})
        try:
            await self._backend.send_email(message)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Failed to deliver notification",
                notification_type=notification_type,
                recipient=recipient_email,
            )
            return NotificationDelivery(success=False, error=str(exc))

        message_id = message["Message-ID"]
        logger.info("Sent notification", notification_type=notification_type, message_id=message_id)
        return NotificationDelivery(success=True, message_id=message_id)

    @staticmethod
    def _render(recipient: str, notification_type: str, data: Mapping[str, Any]) -> EmailMessage:
        subject = SUBJECTS.get(notification_type, notification_type.replace("_", " ").capitalize())
        lines = [subject, ""]
        for key, value in data.items():
            if value is None:
                continue
            label = key.replace("_", " ").capitalize()
            lines.append(f"{label}: {value}")

        message = EmailMessage()
        message["To"] = recipient
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain="expertpay")
        message["X-Notification-Type"] = notification_type
        message.set_content("\n".join(lines) + "\n")
        return message

    @staticmethod
    def _build_default_backend() -> Optional[EmailBackend]:
        settings = get_settings()
        if not settings.smtp_host or not settings.smtp_sender_email:
            return None

        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )
