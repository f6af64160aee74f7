"""Internal API endpoints, protected by shared secret rather than admin auth.

These endpoints are called by cron jobs / external schedulers to run the
background jobs on demand. They validate a shared secret via the
X-Cron-Secret header.
"""

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.api.deps import (
    get_audit_recorder,
    get_notifier,
    get_webhook_processor,
    verify_cron_secret,
)
from billing_sync.billing.processor import WebhookProcessor
from billing_sync.config.settings import settings
from billing_sync.core.database import get_session_maker
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.notifications import NotificationDispatcher
from billing_sync.services.overdue_invoices import sweep_overdue_invoices

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post("/webhooks/reprocess")
async def reprocess_webhooks(
    include_failed: bool = False,
    stale_after_seconds: int | None = None,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> dict[str, Any]:
    """
    Replay webhook deliveries that were stored but never finished.

    Rows that failed with a handler error are only replayed when
    include_failed is set, up to their attempt limit.
    """
    return await processor.reprocess_stale(
        settings.inbox_stale_after_seconds if stale_after_seconds is None else stale_after_seconds,
        include_failed=include_failed,
    )


@router.post("/invoices/overdue-sweep")
async def trigger_overdue_sweep(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    notifier: NotificationDispatcher = Depends(get_notifier),
    auditor: AuditLogRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    """Mark open invoices past their due date as past due and remind billing contacts."""
    report = await sweep_overdue_invoices(session_maker, notifier, auditor)
    return asdict(report)
