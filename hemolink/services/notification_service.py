import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

import httpx

from hemolink.config import settings

logger = logging.getLogger(__name__)


@dataclass
class DonorNotification:
    donor_id: UUID
    phone: Optional[str]
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "recipient_id": str(self.donor_id),
            "phone": self.phone,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class NotificationGateway:
    """Posts notifications to the external delivery service (SMS/WhatsApp/push)."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    async def send(self, notification: DonorNotification) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/notifications", json=notification.to_payload()
            )
            response.raise_for_status()

    async def send_many(self, notifications: Sequence[DonorNotification]) -> List[Any]:
        """
        Deliver concurrently; the result list holds ``None`` for each
        success and the raised exception for each failure.
        """
        results = await asyncio.gather(
            *(self.send(n) for n in notifications), return_exceptions=True
        )
        failures = sum(1 for r in results if isinstance(r, Exception))
        logger.info(
            f"Delivered {len(notifications) - failures}/{len(notifications)} notifications"
        )
        return list(results)


class LoggingNotificationGateway(NotificationGateway):
    """Used when no delivery service is configured; only logs."""

    def __init__(self):
        super().__init__(base_url="")

    async def send(self, notification: DonorNotification) -> None:
        logger.info(
            f"Notification for donor {notification.donor_id}: {notification.title}",
            extra={"extra_fields": {"notification": notification.to_payload()}},
        )


def get_notification_gateway() -> NotificationGateway:
    if settings.NOTIFICATION_SERVICE_URL:
        return NotificationGateway(settings.NOTIFICATION_SERVICE_URL)
    return LoggingNotificationGateway()
