"""Notification services."""

from .backend import EmailBackend, InMemoryEmailBackend, SMTPEmailBackend  # noqa: F401
from .gateway import NotificationDelivery, NotificationGateway  # noqa: F401
