"""Web push delivery to agent browsers (VAPID)."""

import asyncio
import json
import logging

from pywebpush import webpush, WebPushException

from app.core.config import settings

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"
EXPIRED = "expired"
FAILED = "failed"
DISABLED = "disabled"


class PushService:
    def __init__(self, vapid_public_key: str, vapid_private_key: str, subject: str, timeout: float = 5.0):
        self.vapid_public_key = vapid_public_key
        self.vapid_private_key = vapid_private_key
        self.subject = subject
        self.timeout = timeout

        if not self.enabled:
            logger.warning("VAPID keys not configured - web push disabled")

    @classmethod
    def from_settings(cls) -> "PushService":
        return cls(
            settings.VAPID_PUBLIC_KEY,
            settings.VAPID_PRIVATE_KEY,
            settings.VAPID_SUBJECT,
            timeout=settings.PUSH_TIMEOUT_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)

    async def send(self, subscription: dict | None, title: str, body: str, data: dict | None = None) -> str:
        """Send one notification. Returns sent / skipped / expired / failed / disabled.

        ``expired`` means the push service answered 410 or 400 and the
        subscription should be dropped.
        """
        if not self.enabled:
            return DISABLED
        if not subscription:
            return SKIPPED

        message = json.dumps({
            "title": title,
            "body": body,
            "icon": "/icon-192x192.png",
            "badge": "/badge-72x72.png",
            "data": data or {},
        }, default=str)
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription,
                data=message,
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.subject},
                timeout=self.timeout,
            )
            return SENT
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            if status in (400, 410):
                logger.warning("Push subscription rejected with %s: %s", status, subscription.get("endpoint"))
                return EXPIRED
            logger.error("Error sending push notification: %s", e)
            return FAILED
        except Exception as e:
            logger.error("Unexpected error sending push notification: %s", e)
            return FAILED
