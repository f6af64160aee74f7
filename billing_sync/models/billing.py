"""Billing models - webhook capture, idempotency ledger, and failure counters."""

import uuid as uuid_pkg
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    Uuid,
    func,
)
from sqlmodel import Field, SQLModel

from billing_sync.models.base import utcnow


class WebhookInboxStatus(str, Enum):
    """Processing states of a captured webhook delivery."""

    RECEIVED = "received"  # Captured, not yet processed
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"  # Signature invalid
    IGNORED = "ignored"  # Unknown type or unattributable
    FAILED = "failed"  # Handler error, safe to replay


class WebhookInbox(SQLModel, table=True):
    """
    Durable log of every inbound webhook delivery.

    A row is committed before the processor is acknowledged, so an event
    is never lost to a crash between ack and processing. Rows left in
    `received` are replayed by the scheduler.
    """

    __tablename__ = "webhook_inbox"
    __table_args__ = (Index("ix_webhook_inbox_status_received", "status", "received_at"),)

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
    )
    raw_body: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    # Stored verbatim; the header is attacker-controlled and unbounded
    signature: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    status: str = Field(
        default=WebhookInboxStatus.RECEIVED.value,
        sa_column=Column(
            String(20),
            nullable=False,
            server_default=WebhookInboxStatus.RECEIVED.value,
        ),
    )
    event_id: str | None = Field(default=None, max_length=255, nullable=True, index=True)
    event_type: str | None = Field(default=None, max_length=64, nullable=True)
    attempts: int = Field(default=0, nullable=False)
    last_error: str | None = Field(default=None, max_length=1000, nullable=True)

    received_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )
    processed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )


class ProcessedEvent(SQLModel, table=True):
    """
    Idempotency ledger.

    Existence of a row means the event's state mutation has been committed
    and a redelivery must not be applied again.
    """

    __tablename__ = "processed_events"

    event_id: str = Field(
        sa_column=Column(String(255), primary_key=True, nullable=False),
    )
    event_type: str = Field(max_length=64, nullable=False)
    organization_id: uuid_pkg.UUID | None = Field(
        default=None,
        sa_column=Column(Uuid, nullable=True, index=True),
    )
    processed_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )


class PaymentFailureCount(SQLModel, table=True):
    """Consecutive payment failures per organization, reset on success."""

    __tablename__ = "payment_failure_counts"

    organization_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            Uuid,
            ForeignKey("organizations.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
    )
    count: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default="0"),
    )
    last_event_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
