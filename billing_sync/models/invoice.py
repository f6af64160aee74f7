"""Invoice model - one billing period's charge for an organization."""

import uuid as uuid_pkg
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Uuid
from sqlmodel import Field

from billing_sync.models.base import TimestampMixin, UUIDMixin


class InvoiceStatus(str, Enum):
    """Invoice payment states."""

    DRAFT = "draft"
    OPEN = "open"
    PROCESSING = "processing"
    PAID = "paid"  # Terminal
    PAST_DUE = "past_due"
    FAILED = "failed"
    VOID = "void"  # Terminal
    UNCOLLECTIBLE = "uncollectible"
    REFUNDED = "refunded"  # Terminal


class Invoice(UUIDMixin, TimestampMixin, table=True):
    """
    Invoice model.

    `paid_at` is stamped exactly once, on the first transition into `paid`.
    """

    __tablename__ = "invoices"

    organization_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            Uuid,
            ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    subscription_id: uuid_pkg.UUID | None = Field(
        default=None,
        sa_column=Column(
            Uuid,
            ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )

    invoice_number: str = Field(max_length=64, nullable=False, unique=True, index=True)
    amount: Decimal = Field(sa_column=Column(Numeric(12, 2), nullable=False))
    currency: str = Field(default="JPY", max_length=3, nullable=False)
    status: str = Field(
        default=InvoiceStatus.DRAFT.value,
        sa_column=Column(
            String(20),
            nullable=False,
            index=True,
            server_default=InvoiceStatus.DRAFT.value,
        ),
    )

    billing_period_start: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=DateTime(timezone=True)
    )
    billing_period_end: datetime = Field(  # type: ignore[call-overload]
        nullable=False, sa_type=DateTime(timezone=True)
    )
    due_date: datetime = Field(  # type: ignore[call-overload]
        nullable=False, index=True, sa_type=DateTime(timezone=True)
    )
    paid_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
