"""Notification log model - delivery record for billing notifications."""

import uuid as uuid_pkg
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, String, Uuid, func
from sqlmodel import Field, SQLModel

from billing_sync.models.base import JSONType, utcnow


class NotificationKind(str, Enum):
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILURE = "payment_failure"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    INVOICE_PAYMENT_REMINDER = "invoice_payment_reminder"
    ACCESS_SUSPENDED = "access_suspended"
    ACCESS_RESTORED = "access_restored"
    REFUND = "refund"
    REFUND_FAILURE = "refund_failure"
    TRIAL_EXTENDED = "trial_extended"
    STATUS_CHANGED = "status_changed"


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # No transport configured or no recipient


class NotificationLog(SQLModel, table=True):
    """One row per notification attempt."""

    __tablename__ = "notification_logs"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
    )
    organization_id: uuid_pkg.UUID = Field(
        sa_column=Column(Uuid, nullable=False, index=True),
    )
    kind: str = Field(sa_column=Column(String(50), nullable=False, index=True))
    message: str = Field(max_length=2000, nullable=False)
    recipient: str | None = Field(default=None, max_length=255, nullable=True)
    status: str = Field(sa_column=Column(String(20), nullable=False))
    error: str | None = Field(default=None, max_length=1000, nullable=True)
    metadata_: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSONType, nullable=False),
    )
    sent_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )
