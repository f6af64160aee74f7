"""Daily sweep moving open invoices past their due date to `past_due`.

Each invoice is updated under the same per-organization lock and row lock
as the webhook path, so a payment webhook arriving mid-sweep is never
overwritten. A reminder goes to the billing contact for every invoice
that actually changed.
"""

import logging
import time
import uuid as uuid_pkg
from dataclasses import dataclass
from datetime import datetime
from functools import partial

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.billing.invoice_ledger import InvoiceLedger
from billing_sync.core.locks import organization_lock
from billing_sync.core.unit_of_work import UnitOfWork
from billing_sync.domain.invoice_operations import invoice_ops
from billing_sync.domain.organization_operations import organization_ops
from billing_sync.models.audit_log import AuditCategory
from billing_sync.models.base import utcnow
from billing_sync.models.notification_log import NotificationKind
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class OverdueSweepReport:
    """Result summary for logging and the manual trigger endpoint."""

    invoices_checked: int = 0
    invoices_marked: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


async def _mark_one(
    session_maker: async_sessionmaker[AsyncSession],
    ledger: InvoiceLedger,
    notifier: NotificationDispatcher,
    auditor: AuditLogRecorder,
    invoice_id: uuid_pkg.UUID,
    organization_id: uuid_pkg.UUID,
) -> bool:
    async with organization_lock(organization_id):
        async with UnitOfWork(session_maker) as uow:
            await organization_ops.get_for_update(uow.session, organization_id)
            invoice = await invoice_ops.get(uow.session, invoice_id)
            if invoice is None or not await ledger.mark_overdue(uow.session, invoice):
                return False

            auditor.record(
                uow.session,
                AuditCategory.INVOICE,
                "invoice_past_due",
                {
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "due_date": invoice.due_date,
                },
                organization_id,
            )
            uow.after_commit(
                partial(
                    notifier.notify,
                    organization_id,
                    NotificationKind.INVOICE_PAYMENT_REMINDER,
                    f"Invoice {invoice.invoice_number} ({invoice.amount} {invoice.currency}) "
                    f"was due on {invoice.due_date:%Y-%m-%d}. Please complete payment.",
                    {"invoice_id": str(invoice.id)},
                )
            )
    return True


async def sweep_overdue_invoices(
    session_maker: async_sessionmaker[AsyncSession],
    notifier: NotificationDispatcher,
    auditor: AuditLogRecorder,
    now: datetime | None = None,
    limit: int = 500,
) -> OverdueSweepReport:
    """Main entry point, called daily by the scheduler."""
    report = OverdueSweepReport()
    start = time.monotonic()
    ledger = InvoiceLedger(auditor)

    async with session_maker() as db:
        overdue = await invoice_ops.list_overdue(db, now or utcnow(), limit=limit)
        candidates = [(invoice.id, invoice.organization_id) for invoice in overdue]

    report.invoices_checked = len(candidates)

    for invoice_id, organization_id in candidates:
        try:
            if await _mark_one(
                session_maker, ledger, notifier, auditor, invoice_id, organization_id
            ):
                report.invoices_marked += 1
        except Exception:
            logger.exception(f"[overdue] Error marking invoice {invoice_id}")
            report.errors += 1

    report.duration_seconds = round(time.monotonic() - start, 2)
    logger.info(
        f"[overdue] Done: {report.invoices_marked}/{report.invoices_checked} marked past due, "
        f"{report.errors} errors, {report.duration_seconds}s"
    )
    return report
