"""Subscription model - an organization's recurring plan at the payment processor."""

import uuid as uuid_pkg
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Uuid, text
from sqlmodel import Field, Relationship

from billing_sync.models.base import TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from billing_sync.models.organization import Organization


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELED = "canceled"  # Terminal


class Subscription(UUIDMixin, TimestampMixin, table=True):
    """
    Subscription model - mirrors the processor's recurring billing object.

    An organization has at most one non-canceled subscription. A canceled
    subscription is kept for history and never transitions again; a later
    `subscription_created` produces a new row.
    """

    __tablename__ = "subscriptions"

    organization_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            Uuid,
            ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )

    # Processor reference (the processor's own subscription id)
    processor_subscription_id: str | None = Field(
        default=None, max_length=255, nullable=True, unique=True, index=True
    )

    status: str = Field(
        default=SubscriptionStatus.INCOMPLETE.value,
        sa_column=Column(
            String(20),
            nullable=False,
            index=True,
            server_default=SubscriptionStatus.INCOMPLETE.value,
        ),
    )

    # Plan info
    plan_id: str | None = Field(default=None, max_length=255, nullable=True)
    price_id: str | None = Field(default=None, max_length=255, nullable=True)
    total_amount: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(12, 2), nullable=False, server_default=text("0")),
    )
    currency: str = Field(default="JPY", max_length=3, nullable=False)

    # Billing period
    current_period_start: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    current_period_end: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    cancel_at_period_end: bool = Field(default=False, nullable=False)
    canceled_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    # Relationships
    organization: Optional["Organization"] = Relationship(back_populates="subscriptions")
