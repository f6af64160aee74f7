"""One handler per recognized event type.

Handlers run inside the processor's unit of work with the organization row
already locked. They change state only through the state machines and the
access controller, stage audit entries in the same transaction, and queue
notifications for after the commit.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.billing.access_controller import AccessTrigger, OrganizationAccessController
from billing_sync.billing.events import (
    ChargeFinished,
    ChargeUpdated,
    RefundFinished,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionFailure,
    SubscriptionPayment,
    SubscriptionSuspended,
    WebhookEvent,
)
from billing_sync.billing.failure_escalation import SUSPEND_THRESHOLD, FailureEscalationCounter
from billing_sync.billing.invoice_ledger import InvoiceLedger
from billing_sync.billing.subscription_lifecycle import SubscriptionLifecycle, status_after_failure
from billing_sync.core.unit_of_work import UnitOfWork
from billing_sync.domain.invoice_operations import invoice_ops
from billing_sync.domain.subscription_operations import subscription_ops
from billing_sync.models.audit_log import AuditCategory
from billing_sync.models.invoice import Invoice, InvoiceStatus
from billing_sync.models.notification_log import NotificationKind
from billing_sync.models.organization import Organization, OrganizationStatus
from billing_sync.models.subscription import Subscription, SubscriptionStatus
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Everything a handler may touch while processing one event."""

    uow: UnitOfWork
    organization: Organization
    lifecycle: SubscriptionLifecycle
    ledger: InvoiceLedger
    escalation: FailureEscalationCounter
    access: OrganizationAccessController
    notifier: NotificationDispatcher
    auditor: AuditLogRecorder

    @property
    def db(self) -> AsyncSession:
        return self.uow.session

    def notify(
        self,
        kind: NotificationKind,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Queue a notification to the billing contact, sent only if the unit of work commits."""
        self.uow.after_commit(
            partial(self.notifier.notify, self.organization.id, kind, message, metadata)
        )

    def audit(self, category: str, action: str, payload: dict[str, Any]) -> None:
        self.auditor.record(self.db, category, action, payload, self.organization.id)

    async def resolve_invoice(self, event: WebhookEvent) -> Invoice | None:
        """The invoice named in metadata, if it exists and belongs to this organization."""
        reference = event.invoice_reference
        if not reference:
            return None

        invoice = await invoice_ops.resolve(self.db, reference)
        if invoice is None:
            logger.warning(f"[webhook] {event.type}: invoice {reference} not found")
            self.audit(
                AuditCategory.INVOICE,
                "invoice_not_found",
                {"invoice_reference": reference, "event_id": event.event_id},
            )
            return None

        if invoice.organization_id != self.organization.id:
            logger.warning(
                f"[webhook] {event.type}: invoice {reference} belongs to org "
                f"{invoice.organization_id}, not {self.organization.id}"
            )
            self.audit(
                AuditCategory.INVOICE,
                "invoice_organization_mismatch",
                {
                    "invoice_reference": reference,
                    "invoice_organization_id": invoice.organization_id,
                    "event_id": event.event_id,
                },
            )
            return None
        return invoice

    async def resolve_subscription(self, event: WebhookEvent) -> Subscription | None:
        return await subscription_ops.resolve(
            self.db, self.organization.id, event.processor_subscription_id
        )


def _retired(subscription: Subscription | None) -> bool:
    """A canceled subscription no longer governs the organization's access."""
    return subscription is not None and subscription.status == SubscriptionStatus.CANCELED.value


async def handle_subscription_created(ctx: HandlerContext, event: SubscriptionCreated) -> None:
    org = ctx.organization
    subscription, created = await ctx.lifecycle.on_created(ctx.db, org.id, event)

    if subscription.organization_id != org.id:
        logger.warning(
            f"[webhook] subscription_created: processor subscription {event.data.id} "
            f"already belongs to org {subscription.organization_id}"
        )
        ctx.audit(
            AuditCategory.SUBSCRIPTION,
            "subscription_organization_mismatch",
            {
                "processor_subscription_id": event.data.id,
                "subscription_organization_id": subscription.organization_id,
            },
        )
        return

    changed = await ctx.access.apply_access_policy(
        ctx.uow,
        org,
        SubscriptionStatus(subscription.status),
        None,
        AccessTrigger.SUBSCRIPTION_CREATED,
    )
    if changed and org.status == OrganizationStatus.ACTIVE.value:
        # Failures counted against an earlier subscription do not carry over
        await ctx.escalation.reset(ctx.db, org.id)
    if created and not changed:
        ctx.notify(
            NotificationKind.SUBSCRIPTION_CREATED,
            "Your subscription has been created successfully.",
            {"subscription_id": str(subscription.id)},
        )

    ctx.audit(
        AuditCategory.SUBSCRIPTION,
        "subscription_created",
        {
            "subscription_id": subscription.id,
            "processor_subscription_id": event.data.id,
            "plan_id": event.data.metadata.plan_id,
            "status": subscription.status,
            "created": created,
        },
    )


async def handle_subscription_payment(ctx: HandlerContext, event: SubscriptionPayment) -> None:
    org = ctx.organization

    invoice = await ctx.resolve_invoice(event)
    invoice_status = await ctx.ledger.on_paid(ctx.db, invoice) if invoice else None

    await ctx.escalation.reset(ctx.db, org.id)

    subscription = await ctx.resolve_subscription(event)
    subscription_status: SubscriptionStatus | None = None
    if subscription is not None and not _retired(subscription):
        subscription_status = await ctx.lifecycle.on_payment_success(ctx.db, subscription)

    await ctx.access.apply_access_policy(
        ctx.uow, org, subscription_status, invoice_status, AccessTrigger.PAYMENT_SUCCEEDED
    )

    ctx.audit(
        AuditCategory.PAYMENT,
        "subscription_payment_success",
        {
            "amount": event.data.amount,
            "currency": event.data.currency,
            "subscription_id": event.processor_subscription_id,
            "invoice_id": event.invoice_reference,
        },
    )


async def handle_subscription_failure(ctx: HandlerContext, event: SubscriptionFailure) -> None:
    org = ctx.organization

    subscription = await ctx.resolve_subscription(event)
    if _retired(subscription):
        # Late retries against a canceled subscription never count toward suspension
        logger.info("[webhook] subscription_failure for canceled subscription; not counted")
        ctx.audit(
            AuditCategory.PAYMENT,
            "subscription_payment_failure",
            {
                "error": event.data.error,
                "fail_count": await ctx.escalation.get(ctx.db, org.id),
                "subscription_id": event.processor_subscription_id,
                "invoice_id": event.invoice_reference,
                "counted": False,
            },
        )
        return

    invoice = await ctx.resolve_invoice(event)
    invoice_status = await ctx.ledger.on_past_due(ctx.db, invoice) if invoice else None

    fail_count = await ctx.escalation.increment(ctx.db, org.id)

    subscription_status: SubscriptionStatus
    if subscription is None:
        subscription_status = status_after_failure(fail_count)
    else:
        subscription_status = await ctx.lifecycle.on_payment_failure(
            ctx.db, subscription, fail_count
        )

    await ctx.access.apply_access_policy(
        ctx.uow, org, subscription_status, invoice_status, AccessTrigger.PAYMENT_FAILED
    )

    if fail_count < SUSPEND_THRESHOLD:
        ctx.notify(
            NotificationKind.PAYMENT_FAILURE,
            "Your payment failed. Please check your payment details.",
            {"fail_count": fail_count},
        )

    ctx.audit(
        AuditCategory.PAYMENT,
        "subscription_payment_failure",
        {
            "error": event.data.error,
            "fail_count": fail_count,
            "subscription_id": event.processor_subscription_id,
            "invoice_id": event.invoice_reference,
        },
    )


async def handle_subscription_suspended(
    ctx: HandlerContext, event: SubscriptionSuspended
) -> None:
    subscription = await ctx.resolve_subscription(event)
    if _retired(subscription):
        logger.info("[webhook] subscription_suspended for canceled subscription; ignored")
        return

    if subscription is not None:
        subscription_status = await ctx.lifecycle.on_suspended(ctx.db, subscription)
    else:
        subscription_status = SubscriptionStatus.SUSPENDED

    await ctx.access.apply_access_policy(
        ctx.uow, ctx.organization, subscription_status, None, AccessTrigger.SUBSCRIPTION_SUSPENDED
    )

    ctx.audit(
        AuditCategory.SUBSCRIPTION,
        "subscription_suspended",
        {"subscription_id": event.processor_subscription_id, "reason": event.data.reason},
    )


async def handle_subscription_canceled(ctx: HandlerContext, event: SubscriptionCanceled) -> None:
    subscription = await ctx.resolve_subscription(event)
    if _retired(subscription):
        logger.info("[webhook] subscription_canceled repeated for canceled subscription; ignored")
        return

    if subscription is not None:
        subscription_status = await ctx.lifecycle.on_canceled(ctx.db, subscription)
    else:
        subscription_status = SubscriptionStatus.CANCELED

    await ctx.access.apply_access_policy(
        ctx.uow, ctx.organization, subscription_status, None, AccessTrigger.SUBSCRIPTION_CANCELED
    )

    ctx.audit(
        AuditCategory.SUBSCRIPTION,
        "subscription_canceled",
        {"subscription_id": event.processor_subscription_id, "reason": event.data.reason},
    )


async def handle_charge_updated(ctx: HandlerContext, event: ChargeUpdated) -> None:
    ctx.audit(
        AuditCategory.PAYMENT,
        "charge_updated",
        {
            "charge_id": event.data.id,
            "status": event.data.status,
            "invoice_id": event.invoice_reference,
        },
    )

    if event.data.status not in (None, "pending"):
        return
    invoice = await ctx.resolve_invoice(event)
    if invoice is not None:
        await ctx.ledger.on_processing(ctx.db, invoice)


async def handle_charge_finished(ctx: HandlerContext, event: ChargeFinished) -> None:
    invoice = await ctx.resolve_invoice(event)
    invoice_status: InvoiceStatus | None = None
    if invoice is not None:
        invoice_status = await ctx.ledger.on_finished(ctx.db, invoice, event.is_successful)

    metadata = event.data.metadata
    if event.is_successful:
        if metadata.plan_id and not metadata.subscription_id:
            # One-off plan purchase rather than a subscription renewal
            ctx.notify(
                NotificationKind.PAYMENT_SUCCESS,
                "Your payment is complete. You can now use the service.",
                {"charge_id": event.data.id, "plan_id": metadata.plan_id},
            )
        ctx.audit(
            AuditCategory.PAYMENT,
            "charge_success",
            {
                "charge_id": event.data.id,
                "amount": event.data.amount,
                "currency": event.data.currency,
                "invoice_id": event.invoice_reference,
                "invoice_status": invoice_status.value if invoice_status else None,
                "plan_id": metadata.plan_id,
            },
        )
        return

    ctx.notify(
        NotificationKind.PAYMENT_FAILURE,
        "Your payment failed. Please check your payment details.",
        {"charge_id": event.data.id},
    )
    ctx.audit(
        AuditCategory.PAYMENT,
        "charge_failure",
        {
            "charge_id": event.data.id,
            "status": event.data.status,
            "invoice_id": event.invoice_reference,
            "invoice_status": invoice_status.value if invoice_status else None,
        },
    )


async def handle_refund_finished(ctx: HandlerContext, event: RefundFinished) -> None:
    applied = False
    if event.is_successful:
        # A refund naming no invoice has nothing to reconcile
        applied = not event.invoice_reference
        invoice = await ctx.resolve_invoice(event)
        if invoice is not None:
            status = await ctx.ledger.on_refunded(ctx.db, invoice)
            applied = status == InvoiceStatus.REFUNDED
        if applied:
            ctx.notify(
                NotificationKind.REFUND,
                "Your refund has been processed.",
                {"refund_id": event.data.id},
            )
    else:
        ctx.notify(
            NotificationKind.REFUND_FAILURE,
            "Your refund could not be processed. Please contact support.",
            {"refund_id": event.data.id},
        )

    ctx.audit(
        AuditCategory.PAYMENT,
        "refund_finished",
        {
            "refund_id": event.data.id,
            "charge_id": event.data.charge_id,
            "amount": event.data.amount,
            "currency": event.data.currency,
            "status": event.data.status,
            "invoice_id": event.invoice_reference,
            "applied": applied,
        },
    )
