"""Thin Postmark client for billing notification email.

Uses Postmark's REST API directly via httpx - no SDK needed.
"""

import logging

import httpx

from billing_sync.billing.exceptions import NotificationDispatchFailure
from billing_sync.config import settings

logger = logging.getLogger(__name__)

POSTMARK_API_URL = "https://api.postmarkapp.com/email"
POSTMARK_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}


class PostmarkService:
    """Send transactional emails via Postmark's REST API."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout if timeout is not None else settings.notification_timeout_seconds

    @property
    def enabled(self) -> bool:
        return settings.postmark_enabled

    async def send(
        self,
        to: str,
        subject: str,
        text_body: str,
        tag: str | None = None,
    ) -> None:
        """
        Send a single plain-text email.

        Raises NotificationDispatchFailure on any HTTP or transport error.
        """
        payload = {
            "From": settings.postmark_from_email,
            "To": to,
            "Subject": subject,
            "TextBody": text_body,
            "MessageStream": "outbound",
        }
        if tag:
            payload["Tag"] = tag

        headers = {
            **POSTMARK_HEADERS,
            "X-Postmark-Server-Token": settings.postmark_api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(POSTMARK_API_URL, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"[postmark] HTTP {e.response.status_code} sending to {to}: {e.response.text}"
            )
            raise NotificationDispatchFailure(
                f"Postmark returned HTTP {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            logger.error(f"[postmark] Request failed sending to {to}: {e}")
            raise NotificationDispatchFailure(f"Postmark request failed: {e}") from e

        logger.info(f"[postmark] Sent to {to}: {subject}")


postmark_service = PostmarkService()
