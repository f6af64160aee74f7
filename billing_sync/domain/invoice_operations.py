"""Domain operations for Invoice model."""

import uuid as uuid_pkg
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.invoice import Invoice, InvoiceStatus


class InvoiceOperations:
    """CRUD operations for Invoice model."""

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Invoice | None:
        """Get an invoice by ID."""
        statement = select(Invoice).where(Invoice.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_number(
        self,
        db: AsyncSession,
        invoice_number: str,
    ) -> Invoice | None:
        """Get an invoice by its human-facing invoice number."""
        statement = select(Invoice).where(Invoice.invoice_number == invoice_number)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def resolve(
        self,
        db: AsyncSession,
        reference: str,
    ) -> Invoice | None:
        """Find an invoice by local UUID, falling back to invoice number."""
        try:
            invoice_id = uuid_pkg.UUID(reference)
        except ValueError:
            return await self.get_by_number(db, reference)

        invoice = await self.get(db, invoice_id)
        if invoice is None:
            invoice = await self.get_by_number(db, reference)
        return invoice

    async def create(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        invoice_number: str,
        amount: Decimal,
        billing_period_start: datetime,
        billing_period_end: datetime,
        due_date: datetime,
        subscription_id: uuid_pkg.UUID | None = None,
        currency: str = "JPY",
        status: str = InvoiceStatus.OPEN.value,
    ) -> Invoice:
        """Create an invoice."""
        invoice = Invoice(
            organization_id=organization_id,
            subscription_id=subscription_id,
            invoice_number=invoice_number,
            amount=amount,
            currency=currency,
            status=status,
            billing_period_start=billing_period_start,
            billing_period_end=billing_period_end,
            due_date=due_date,
        )
        db.add(invoice)
        await db.flush()
        await db.refresh(invoice)
        return invoice

    async def list_overdue(
        self,
        db: AsyncSession,
        now: datetime,
        limit: int = 500,
    ) -> list[Invoice]:
        """Get open invoices whose due date has passed, oldest first."""
        statement = (
            select(Invoice)
            .where(
                Invoice.status == InvoiceStatus.OPEN.value,
                Invoice.due_date < now,
            )
            .order_by(Invoice.due_date.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


invoice_ops = InvoiceOperations()
