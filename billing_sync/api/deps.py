from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.billing.gateway import WebhookGateway
from billing_sync.billing.processor import WebhookProcessor
from billing_sync.config import settings
from billing_sync.core.database import get_session_maker
from billing_sync.core.exceptions import ForbiddenError
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.email.postmark import postmark_service
from billing_sync.services.notifications import EmailTransport, NotificationDispatcher


def _verify_secret(provided: str | None, expected: str, name: str) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not configured",
        )
    if provided != expected:
        raise ForbiddenError(f"Invalid {name.lower()}")


def verify_admin_secret(x_admin_secret: str | None = Header(None)) -> None:
    """Validate the X-Admin-Secret header for administrative endpoints."""
    _verify_secret(x_admin_secret, settings.admin_api_secret, "Admin secret")


def verify_cron_secret(x_cron_secret: str | None = Header(None)) -> None:
    """Validate the X-Cron-Secret header for scheduler-triggered endpoints."""
    _verify_secret(x_cron_secret, settings.cron_secret, "Cron secret")


# ---------------------------------------------------------------------------
# Billing collaborators
# ---------------------------------------------------------------------------


def get_email_transport() -> EmailTransport:
    return postmark_service


def get_audit_recorder(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> AuditLogRecorder:
    return AuditLogRecorder(session_maker)


def get_notifier(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    transport: EmailTransport = Depends(get_email_transport),
) -> NotificationDispatcher:
    return NotificationDispatcher(session_maker, transport)


def get_webhook_processor(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    notifier: NotificationDispatcher = Depends(get_notifier),
    auditor: AuditLogRecorder = Depends(get_audit_recorder),
) -> WebhookProcessor:
    return WebhookProcessor(session_maker, settings.payment_webhook_secret, notifier, auditor)


def get_webhook_gateway(
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookGateway:
    return WebhookGateway(processor, settings.webhook_ack_timeout_seconds)
