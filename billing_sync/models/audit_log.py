"""Audit log model - append-only record of billing activity."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import Column, DateTime, Index, String, Uuid, func
from sqlmodel import Field, SQLModel

from billing_sync.models.base import JSONType, utcnow


class AuditCategory:
    """Well-known audit categories."""

    PAYMENT_WEBHOOK = "payment_webhook"
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"
    ORGANIZATION = "organization"
    WEBHOOK_HANDLER = "webhook_handler"
    SYSTEM = "system"


class AuditLogEntry(SQLModel, table=True):
    """
    Audit log entry.

    Rows are only ever inserted. `organization_id` is not a
    foreign key: entries must outlive the organization and may reference
    ids that never existed (unattributable webhooks).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_category_action", "category", "action"),)

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
    )
    category: str = Field(sa_column=Column(String(50), nullable=False))
    action: str = Field(sa_column=Column(String(100), nullable=False))
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    organization_id: uuid_pkg.UUID | None = Field(
        default=None,
        sa_column=Column(Uuid, nullable=True, index=True),
    )
    timestamp: datetime = Field(  # type: ignore[call-overload]
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
    )
