"""Organization model - the tenant whose access billing controls."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Column, DateTime, String
from sqlmodel import Field, Relationship

from billing_sync.models.base import TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from billing_sync.models.subscription import Subscription


class OrganizationStatus(str, Enum):
    """Organization access states.

    This is the one canonical vocabulary; admin input and webhook-driven
    changes both go through it.
    """

    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"  # Subscription canceled
    DELETED = "deleted"


class Organization(UUIDMixin, TimestampMixin, table=True):
    """
    Organization model - the billing and access unit.

    `status` is owned by the platform but only ever changed through
    OrganizationAccessController (webhooks) or the admin batch operations,
    both of which serialize per organization.
    """

    __tablename__ = "organizations"

    name: str = Field(max_length=100, nullable=False)
    status: str = Field(
        default=OrganizationStatus.TRIAL.value,
        sa_column=Column(
            String(20),
            nullable=False,
            index=True,
            server_default=OrganizationStatus.TRIAL.value,
        ),
    )
    status_reason: str | None = Field(default=None, max_length=255, nullable=True)
    status_changed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    # Billing contact - recipient of every billing notification
    billing_contact_email: str = Field(max_length=255, nullable=False)

    trial_ends_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    # Relationships
    subscriptions: list["Subscription"] = Relationship(
        back_populates="organization",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
