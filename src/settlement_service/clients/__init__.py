"""HTTP clients for external service communication."""

from settlement_service.clients.notification_client import NotificationClient

__all__ = ["NotificationClient"]
