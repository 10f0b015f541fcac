"""Async HTTP client that delivers notification events to a webhook."""

from __future__ import annotations

from typing import Any

import httpx

from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger


class NotificationClient:
    """
    Posts notification events to the configured sink.

    Delivery is best-effort: the settlement engine has already committed by
    the time a notification is sent, so a failure here only leaves the event
    pending in the outbox for the next flush.
    """

    def __init__(self, webhook_url: str, timeout_seconds: int) -> None:
        self._webhook_url = webhook_url
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def deliver(self, notification: dict[str, Any]) -> None:
        """
        POST one notification to the webhook.

        Args:
            notification: dict with keys notification_id, user_id, type, title, payload

        Raises:
            ServiceError: NOTIFICATION_SINK_UNAVAILABLE (502) on connection/timeout errors
            ServiceError: NOTIFICATION_REJECTED (502) on a non-2xx response
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._webhook_url,
                json={
                    "notification_id": notification["notification_id"],
                    "user_id": notification["user_id"],
                    "type": notification["type"],
                    "title": notification["title"],
                    "payload": notification["payload"],
                    "created_at": notification["created_at"],
                },
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Notification sink connection failed",
                extra={"error": str(exc), "webhook_url": self._webhook_url},
            )
            raise ServiceError(
                error="NOTIFICATION_SINK_UNAVAILABLE",
                message="Cannot connect to notification sink",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification sink HTTP error",
                extra={"error": str(exc), "webhook_url": self._webhook_url},
            )
            raise ServiceError(
                error="NOTIFICATION_SINK_UNAVAILABLE",
                message="Notification sink request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code >= 300:
            logger.warning(
                "Notification sink rejected event",
                extra={
                    "status_code": response.status_code,
                    "notification_id": notification["notification_id"],
                },
            )
            raise ServiceError(
                error="NOTIFICATION_REJECTED",
                message="Notification sink rejected the event",
                status_code=502,
                details={"sink_status": response.status_code},
            )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
