"""Admin API endpoints for billing administration.

Protected by the X-Admin-Secret header. Batch operations update each
organization under the same per-organization lock and row lock as the
webhook path, so a concurrent webhook is never silently overwritten.
"""

import logging
import uuid as uuid_pkg
from datetime import datetime
from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.api.deps import get_audit_recorder, get_notifier, verify_admin_secret
from billing_sync.billing.access_controller import OrganizationAccessController
from billing_sync.billing.failure_escalation import FailureEscalationCounter
from billing_sync.billing.invoice_ledger import InvoiceLedger
from billing_sync.core.database import get_session_maker
from billing_sync.core.exceptions import NotFoundError, ValidationError
from billing_sync.core.locks import organization_lock
from billing_sync.core.unit_of_work import UnitOfWork
from billing_sync.domain import audit_log_ops, invoice_ops, organization_ops
from billing_sync.models.audit_log import AuditCategory
from billing_sync.models.notification_log import NotificationKind
from billing_sync.models.organization import OrganizationStatus
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_secret)],
)

MAX_TRIAL_EXTENSION_DAYS = 365


class OrganizationStatusUpdate(BaseModel):
    """Schema for a bulk organization status change."""

    organization_ids: list[uuid_pkg.UUID]
    status: str
    reason: str | None = None
    notify_owners: bool = False


class OrganizationStatusResult(BaseModel):
    organization_id: str
    previous_status: str
    status: str
    status_changed: bool


class TrialExtension(BaseModel):
    """Schema for a bulk trial extension."""

    organization_ids: list[uuid_pkg.UUID]
    days: int
    reason: str | None = None
    notify_owners: bool = False


class TrialExtensionResult(BaseModel):
    organization_id: str
    trial_ends_at: str


class InvoiceVoidResponse(BaseModel):
    id: str
    invoice_number: str
    status: str


class AuditLogResponse(BaseModel):
    """Response schema for one audit entry."""

    id: str
    category: str
    action: str
    payload: dict[str, Any]
    organization_id: str | None
    timestamp: str


class AuditLogPage(BaseModel):
    items: list[AuditLogResponse]
    total: int


async def _require_organizations(
    session_maker: async_sessionmaker[AsyncSession],
    organization_ids: list[uuid_pkg.UUID],
) -> list[uuid_pkg.UUID]:
    """Deduplicate ids, preserving order. 400 if empty, 404 if any is unknown."""
    ids = list(dict.fromkeys(organization_ids))
    if not ids:
        raise ValidationError("organization_ids must not be empty")

    async with session_maker() as db:
        found = {org.id for org in await organization_ops.get_many(db, ids)}
    missing = [str(org_id) for org_id in ids if org_id not in found]
    if missing:
        raise NotFoundError(f"Organizations {', '.join(missing)}")
    return ids


# ─────────────────────────────────────────────────────────────────────────────
# Organizations
# ─────────────────────────────────────────────────────────────────────────────


@router.put("/organizations/status")
async def update_organization_status(
    data: OrganizationStatusUpdate,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    notifier: NotificationDispatcher = Depends(get_notifier),
    auditor: AuditLogRecorder = Depends(get_audit_recorder),
) -> list[OrganizationStatusResult]:
    """
    Set the status of several organizations.

    Organizations already in the requested status are reported with
    status_changed=false. Activating an organization clears its payment
    failure count.
    """
    try:
        target = OrganizationStatus(data.status)
    except ValueError:
        raise ValidationError(f"Invalid organization status: {data.status}") from None

    ids = await _require_organizations(session_maker, data.organization_ids)
    access = OrganizationAccessController(notifier, auditor)
    escalation = FailureEscalationCounter()

    results = []
    for org_id in ids:
        async with organization_lock(org_id):
            async with UnitOfWork(session_maker) as uow:
                org = await organization_ops.get_for_update(uow.session, org_id)
                if org is None:
                    raise NotFoundError(f"Organization {org_id}")
                previous = org.status
                changed = await access.override(
                    uow, org, target, data.reason, notify=data.notify_owners
                )
                if changed and target == OrganizationStatus.ACTIVE:
                    await escalation.reset(uow.session, org_id)

        results.append(
            OrganizationStatusResult(
                organization_id=str(org_id),
                previous_status=previous,
                status=target.value,
                status_changed=changed,
            )
        )

    logger.info(
        f"Admin status update to {target.value}: "
        f"{sum(r.status_changed for r in results)}/{len(results)} changed"
    )
    return results


@router.post("/organizations/extend-trial")
async def extend_organization_trials(
    data: TrialExtension,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    notifier: NotificationDispatcher = Depends(get_notifier),
    auditor: AuditLogRecorder = Depends(get_audit_recorder),
) -> list[TrialExtensionResult]:
    """Push back the trial end date of several organizations by `days`."""
    if not 1 <= data.days <= MAX_TRIAL_EXTENSION_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_TRIAL_EXTENSION_DAYS}")

    ids = await _require_organizations(session_maker, data.organization_ids)

    results = []
    for org_id in ids:
        async with organization_lock(org_id):
            async with UnitOfWork(session_maker) as uow:
                org = await organization_ops.get_for_update(uow.session, org_id)
                if org is None:
                    raise NotFoundError(f"Organization {org_id}")
                previous_end = org.trial_ends_at
                trial_ends_at = await organization_ops.extend_trial(uow.session, org, data.days)

                auditor.record(
                    uow.session,
                    AuditCategory.ORGANIZATION,
                    "trial_extended",
                    {
                        "days": data.days,
                        "previous_trial_ends_at": previous_end,
                        "trial_ends_at": trial_ends_at,
                        "reason": data.reason,
                    },
                    org_id,
                )
                if data.notify_owners:
                    uow.after_commit(
                        partial(
                            notifier.notify,
                            org_id,
                            NotificationKind.TRIAL_EXTENDED,
                            f"Your trial has been extended by {data.days} days, "
                            f"until {trial_ends_at:%Y-%m-%d}.",
                            {"days": data.days, "reason": data.reason},
                        )
                    )

        results.append(
            TrialExtensionResult(
                organization_id=str(org_id),
                trial_ends_at=trial_ends_at.isoformat(),
            )
        )

    return results


# ─────────────────────────────────────────────────────────────────────────────
# Invoices
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/invoices/{invoice_id}/void")
async def void_invoice(
    invoice_id: uuid_pkg.UUID,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    auditor: AuditLogRecorder = Depends(get_audit_recorder),
) -> InvoiceVoidResponse:
    """Void an invoice that is not yet paid, voided or refunded."""
    async with session_maker() as db:
        invoice = await invoice_ops.get(db, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice")

    org_id = invoice.organization_id
    ledger = InvoiceLedger(auditor)
    async with organization_lock(org_id):
        async with UnitOfWork(session_maker) as uow:
            await organization_ops.get_for_update(uow.session, org_id)
            invoice = await invoice_ops.get(uow.session, invoice_id)
            if invoice is None:
                raise NotFoundError("Invoice")
            previous = invoice.status
            if not await ledger.void(uow.session, invoice):
                raise ValidationError(f"Invoice is already {invoice.status}")
            auditor.record(
                uow.session,
                AuditCategory.INVOICE,
                "invoice_voided",
                {
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "previous_status": previous,
                },
                org_id,
            )

    return InvoiceVoidResponse(
        id=str(invoice.id),
        invoice_number=invoice.invoice_number,
        status=invoice.status,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Audit log
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/audit-logs")
async def search_audit_logs(
    category: str | None = None,
    action: str | None = None,
    organization_id: uuid_pkg.UUID | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> AuditLogPage:
    """Search the audit log, newest first."""
    async with session_maker() as db:
        entries, total = await audit_log_ops.search(
            db,
            category=category,
            action=action,
            organization_id=organization_id,
            start=start,
            end=end,
            skip=skip,
            limit=limit,
        )
    return AuditLogPage(
        items=[
            AuditLogResponse(
                id=str(entry.id),
                category=entry.category,
                action=entry.action,
                payload=entry.payload,
                organization_id=str(entry.organization_id) if entry.organization_id else None,
                timestamp=entry.timestamp.isoformat(),
            )
            for entry in entries
        ],
        total=total,
    )
