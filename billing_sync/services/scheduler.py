"""Internal task scheduler using APScheduler.

Runs the billing background jobs within the FastAPI process:

- inbox reprocessing: replays webhook deliveries that were captured but
  never finished (process crash, deploy mid-request),
- overdue sweep: moves open invoices past their due date to `past_due`.

Uses PostgreSQL advisory locks to prevent duplicate execution when
multiple instances are running.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text

from billing_sync.config import settings
from billing_sync.core.database import async_session_maker, direct_session_maker

logger = logging.getLogger(__name__)

# Advisory lock IDs (arbitrary unique integers, one per job)
INBOX_REPROCESS_LOCK_ID = 734101
OVERDUE_SWEEP_LOCK_ID = 734102


@asynccontextmanager
async def advisory_lock(lock_id: int) -> AsyncIterator[bool]:
    """
    Acquire a PostgreSQL advisory lock for the duration of the context.

    Advisory locks are session-level, so this runs on the direct connection
    rather than through the transaction pooler. pg_try_advisory_lock()
    returns immediately: if another process holds the lock, we skip.
    Other dialects (local SQLite) run single-instance and always acquire.
    """
    async with direct_session_maker() as session:
        if session.get_bind().dialect.name != "postgresql":
            yield True
            return

        result = await session.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"),
            {"lock_id": lock_id},
        )
        acquired = result.scalar()

        if not acquired:
            yield False
            return

        try:
            yield True
        finally:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": lock_id},
            )
            await session.commit()


async def run_reprocess_stale_inbox(include_failed: bool = False) -> dict[str, Any] | None:
    """
    Replay stale inbox rows with advisory lock protection.

    Returns the summary dict if executed, None if skipped (lock held by another instance).
    """
    async with advisory_lock(INBOX_REPROCESS_LOCK_ID) as acquired:
        if not acquired:
            logger.info("[scheduler] Inbox-reprocess: skipped (another instance is running)")
            return None

        try:
            from billing_sync.billing.processor import WebhookProcessor
            from billing_sync.services.email.postmark import postmark_service

            processor = WebhookProcessor.build(
                async_session_maker, settings.payment_webhook_secret, postmark_service
            )
            summary = await processor.reprocess_stale(
                settings.inbox_stale_after_seconds, include_failed=include_failed
            )
            if summary["reprocessed"]:
                logger.info(
                    f"[scheduler] Inbox-reprocess: completed "
                    f"({summary['reprocessed']} rows, {summary['outcomes']})"
                )
            return summary

        except Exception as e:
            logger.exception(f"[scheduler] Inbox-reprocess: failed with error: {e}")
            return None


async def run_overdue_invoice_sweep() -> dict[str, Any] | None:
    """
    Execute the overdue-invoice sweep with advisory lock protection.

    Returns the report dict if executed, None if skipped (lock held by another instance).
    """
    async with advisory_lock(OVERDUE_SWEEP_LOCK_ID) as acquired:
        if not acquired:
            logger.info("[scheduler] Overdue-sweep: skipped (another instance is running)")
            return None

        logger.info("[scheduler] Overdue-sweep: starting")

        try:
            from billing_sync.services.audit import AuditLogRecorder
            from billing_sync.services.email.postmark import postmark_service
            from billing_sync.services.notifications import NotificationDispatcher
            from billing_sync.services.overdue_invoices import sweep_overdue_invoices

            report = await sweep_overdue_invoices(
                async_session_maker,
                NotificationDispatcher(async_session_maker, postmark_service),
                AuditLogRecorder(async_session_maker),
            )

            logger.info(
                f"[scheduler] Overdue-sweep: completed "
                f"({report.invoices_marked} marked, "
                f"{report.errors} errors, "
                f"{report.duration_seconds}s)"
            )
            return asdict(report)

        except Exception as e:
            logger.exception(f"[scheduler] Overdue-sweep: failed with error: {e}")
            return None


class Scheduler:
    """Manages the APScheduler instance and job registration."""

    def __init__(self) -> None:
        self._scheduler: AsyncIOScheduler | None = None

    def start(self) -> None:
        """Start the scheduler and register jobs."""
        if not settings.scheduler_enabled:
            logger.info("[scheduler] Disabled via SCHEDULER_ENABLED=false")
            return

        self._scheduler = AsyncIOScheduler()

        # Inbox reprocessing: every few minutes; failed rows are only replayed on request
        self._scheduler.add_job(
            run_reprocess_stale_inbox,
            trigger=IntervalTrigger(minutes=settings.inbox_reprocess_interval_minutes),
            id="inbox_reprocess",
            name="Webhook Inbox Reprocessing",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        # Overdue sweep: daily at configured hour (UTC)
        self._scheduler.add_job(
            run_overdue_invoice_sweep,
            trigger=CronTrigger(hour=settings.overdue_sweep_hour, minute=0),
            id="overdue_sweep",
            name="Overdue Invoice Sweep",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            f"[scheduler] Started with inbox-reprocess every "
            f"{settings.inbox_reprocess_interval_minutes}m, "
            f"overdue-sweep at {settings.overdue_sweep_hour:02d}:00 UTC"
        )

    def stop(self) -> None:
        """Gracefully shut down the scheduler."""
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("[scheduler] Stopped")

    async def trigger_now(self, job_id: str) -> dict[str, Any] | None:
        """
        Manually trigger a job immediately (for testing/debugging).

        Returns the job result or None if job not found.
        """
        if job_id == "inbox_reprocess":
            return await run_reprocess_stale_inbox()
        if job_id == "overdue_sweep":
            return await run_overdue_invoice_sweep()
        return None


scheduler = Scheduler()
