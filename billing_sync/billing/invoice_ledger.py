"""Invoice state machine.

`paid`, `void` and `refunded` are terminal. Every guard below is a status
check, not a timestamp comparison, so events applied out of order converge
on the same final state: a late `paid` cannot resurrect a refunded invoice,
and a late failure cannot undo a payment.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.audit_log import AuditCategory
from billing_sync.models.base import utcnow
from billing_sync.models.invoice import Invoice, InvoiceStatus
from billing_sync.services.audit import AuditLogRecorder

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.REFUNDED})

# Statuses from which a charge can still be attempted, fail, or fall behind
_COLLECTIBLE = frozenset(
    {
        InvoiceStatus.DRAFT,
        InvoiceStatus.OPEN,
        InvoiceStatus.PROCESSING,
        InvoiceStatus.FAILED,
        InvoiceStatus.PAST_DUE,
    }
)


class InvoiceLedger:
    """Applies payment outcomes to an Invoice row."""

    def __init__(self, auditor: AuditLogRecorder):
        self.auditor = auditor

    def _inconsistency(
        self,
        db: AsyncSession,
        invoice: Invoice,
        attempted: InvoiceStatus,
    ) -> None:
        logger.warning(
            f"[invoice] Inconsistent transition {invoice.status} -> {attempted.value} "
            f"for invoice {invoice.invoice_number}; ignored"
        )
        self.auditor.record(
            db,
            AuditCategory.INVOICE,
            "invoice_inconsistency",
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "current_status": invoice.status,
                "attempted_status": attempted.value,
            },
            invoice.organization_id,
        )

    async def _set(self, db: AsyncSession, invoice: Invoice, target: InvoiceStatus) -> InvoiceStatus:
        logger.info(f"[invoice] {invoice.invoice_number}: {invoice.status} -> {target.value}")
        invoice.status = target.value
        db.add(invoice)
        await db.flush()
        return target

    async def on_paid(self, db: AsyncSession, invoice: Invoice) -> InvoiceStatus:
        """Mark paid and stamp `paid_at`. Already paid is a no-op."""
        current = InvoiceStatus(invoice.status)
        if current == InvoiceStatus.PAID:
            return current
        if current in TERMINAL_STATUSES:
            self._inconsistency(db, invoice, InvoiceStatus.PAID)
            return current

        if invoice.paid_at is None:
            invoice.paid_at = utcnow()
        return await self._set(db, invoice, InvoiceStatus.PAID)

    async def on_processing(self, db: AsyncSession, invoice: Invoice) -> InvoiceStatus:
        current = InvoiceStatus(invoice.status)
        if current not in (InvoiceStatus.DRAFT, InvoiceStatus.OPEN):
            return current
        return await self._set(db, invoice, InvoiceStatus.PROCESSING)

    async def on_past_due(self, db: AsyncSession, invoice: Invoice) -> InvoiceStatus:
        return await self._fail(db, invoice, InvoiceStatus.PAST_DUE)

    async def on_finished(
        self,
        db: AsyncSession,
        invoice: Invoice,
        successful: bool,
    ) -> InvoiceStatus:
        if successful:
            return await self.on_paid(db, invoice)
        return await self._fail(db, invoice, InvoiceStatus.FAILED)

    async def _fail(
        self,
        db: AsyncSession,
        invoice: Invoice,
        target: InvoiceStatus,
    ) -> InvoiceStatus:
        current = InvoiceStatus(invoice.status)
        if current == target or current not in _COLLECTIBLE:
            # Terminal (or uncollectible) statuses are never overwritten
            return current
        return await self._set(db, invoice, target)

    async def on_refunded(self, db: AsyncSession, invoice: Invoice) -> InvoiceStatus:
        """Refund a paid invoice. From any other status: audited, ignored."""
        current = InvoiceStatus(invoice.status)
        if current == InvoiceStatus.REFUNDED:
            return current
        if current != InvoiceStatus.PAID:
            self._inconsistency(db, invoice, InvoiceStatus.REFUNDED)
            return current
        return await self._set(db, invoice, InvoiceStatus.REFUNDED)

    async def void(self, db: AsyncSession, invoice: Invoice) -> bool:
        """Void a non-terminal invoice. Returns False if it was already terminal."""
        current = InvoiceStatus(invoice.status)
        if current in TERMINAL_STATUSES:
            return False
        await self._set(db, invoice, InvoiceStatus.VOID)
        return True

    async def mark_overdue(self, db: AsyncSession, invoice: Invoice) -> bool:
        """Move an open invoice past its due date to `past_due`."""
        if invoice.status != InvoiceStatus.OPEN.value:
            return False
        await self._set(db, invoice, InvoiceStatus.PAST_DUE)
        return True
