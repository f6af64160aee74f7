"""Billing notifications to an organization's billing contact.

Every attempt, delivered or not, leaves a row in `notification_logs`.
`notify` never raises: a notification that cannot be sent must not undo
the state change that caused it.
"""

import asyncio
import logging
import uuid as uuid_pkg
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.billing.exceptions import NotificationDispatchFailure
from billing_sync.config import settings
from billing_sync.domain.notification_log_operations import notification_log_ops
from billing_sync.domain.organization_operations import organization_ops
from billing_sync.models.notification_log import NotificationKind, NotificationStatus

logger = logging.getLogger(__name__)

SUBJECTS: dict[NotificationKind, str] = {
    NotificationKind.PAYMENT_SUCCESS: "Payment received",
    NotificationKind.PAYMENT_FAILURE: "Payment failed",
    NotificationKind.SUBSCRIPTION_CREATED: "Your subscription is active",
    NotificationKind.SUBSCRIPTION_SUSPENDED: "Your subscription has been suspended",
    NotificationKind.SUBSCRIPTION_CANCELED: "Your subscription has been canceled",
    NotificationKind.INVOICE_PAYMENT_REMINDER: "Invoice payment overdue",
    NotificationKind.ACCESS_SUSPENDED: "Service access suspended",
    NotificationKind.ACCESS_RESTORED: "Service access restored",
    NotificationKind.REFUND: "Refund completed",
    NotificationKind.REFUND_FAILURE: "Refund failed",
    NotificationKind.TRIAL_EXTENDED: "Your trial has been extended",
    NotificationKind.STATUS_CHANGED: "Your account status has changed",
}


class EmailTransport(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def send(self, to: str, subject: str, text_body: str, tag: str | None = None) -> None: ...


class NotificationDispatcher:
    """Resolves the recipient, sends, and logs the attempt."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        transport: EmailTransport,
        timeout: float | None = None,
    ):
        self._session_maker = session_maker
        self.transport = transport
        self.timeout = timeout if timeout is not None else settings.notification_timeout_seconds

    async def notify(
        self,
        organization_id: uuid_pkg.UUID,
        kind: NotificationKind,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> NotificationStatus:
        """Send one notification. Returns the logged status; never raises."""
        try:
            async with self._session_maker() as db:
                org = await organization_ops.get(db, organization_id)
                recipient = org.billing_contact_email if org else None

                status, error = await self._deliver(recipient, kind, message)

                await notification_log_ops.create(
                    db,
                    organization_id=organization_id,
                    kind=kind.value,
                    message=message,
                    status=status.value,
                    recipient=recipient,
                    error=error,
                    metadata=metadata,
                )
                await db.commit()
            return status
        except Exception:
            logger.exception(
                f"[notify] Failed to record {kind.value} notification for org {organization_id}"
            )
            return NotificationStatus.FAILED

    async def _deliver(
        self,
        recipient: str | None,
        kind: NotificationKind,
        message: str,
    ) -> tuple[NotificationStatus, str | None]:
        if not recipient:
            logger.warning(f"[notify] No billing contact; {kind.value} not sent")
            return NotificationStatus.SKIPPED, "no billing contact"
        if not self.transport.enabled:
            logger.info(f"[notify] Transport disabled; {kind.value} to {recipient} skipped")
            return NotificationStatus.SKIPPED, "transport disabled"

        try:
            await asyncio.wait_for(
                self.transport.send(
                    to=recipient,
                    subject=SUBJECTS[kind],
                    text_body=message,
                    tag=kind.value,
                ),
                timeout=self.timeout,
            )
        except NotificationDispatchFailure as e:
            return NotificationStatus.FAILED, str(e)
        except TimeoutError:
            logger.error(f"[notify] {kind.value} to {recipient} timed out after {self.timeout}s")
            return NotificationStatus.FAILED, "timed out"

        logger.info(f"[notify] Sent {kind.value} to {recipient}")
        return NotificationStatus.SENT, None
