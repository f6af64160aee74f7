"""Organization access derived from billing state.

Rules, first match wins:

1. subscription canceled                          -> inactive
2. subscription suspended                         -> suspended
3. org suspended and a payment succeeded          -> active
4. subscription created and org trial or inactive -> active
5. otherwise                                      -> no change

Deleted organizations are never touched by the policy; only an
administrator override can change them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial

from billing_sync.core.unit_of_work import UnitOfWork
from billing_sync.domain.organization_operations import OrganizationOperations, organization_ops
from billing_sync.models.audit_log import AuditCategory
from billing_sync.models.invoice import InvoiceStatus
from billing_sync.models.notification_log import NotificationKind
from billing_sync.models.organization import Organization, OrganizationStatus
from billing_sync.models.subscription import SubscriptionStatus
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

REASON_CANCELED = "subscription canceled"
REASON_ESCALATION = "payment failure escalation"
REASON_RECOVERED = "payment recovered"
REASON_ACTIVATED = "subscription activated"


class AccessTrigger(str, Enum):
    """The kind of event that prompted a policy evaluation."""

    SUBSCRIPTION_CREATED = "subscription_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


@dataclass(frozen=True)
class AccessDecision:
    status: OrganizationStatus
    reason: str
    notification: NotificationKind
    message: str


def derive_access(
    org_status: OrganizationStatus,
    subscription_status: SubscriptionStatus | None,
    trigger: AccessTrigger,
) -> AccessDecision | None:
    """Pure policy: the organization status the billing state calls for, if any."""
    if org_status == OrganizationStatus.DELETED:
        return None

    if subscription_status == SubscriptionStatus.CANCELED:
        return AccessDecision(
            OrganizationStatus.INACTIVE,
            REASON_CANCELED,
            NotificationKind.SUBSCRIPTION_CANCELED,
            "Your subscription has been canceled. Start a new subscription to keep "
            "using the service.",
        )

    if subscription_status == SubscriptionStatus.SUSPENDED:
        if trigger == AccessTrigger.SUBSCRIPTION_SUSPENDED:
            return AccessDecision(
                OrganizationStatus.SUSPENDED,
                REASON_ESCALATION,
                NotificationKind.SUBSCRIPTION_SUSPENDED,
                "Your subscription has been suspended. Please update your payment details.",
            )
        return AccessDecision(
            OrganizationStatus.SUSPENDED,
            REASON_ESCALATION,
            NotificationKind.ACCESS_SUSPENDED,
            "Service access has been suspended after repeated payment failures. "
            "Please update your payment details.",
        )

    if org_status == OrganizationStatus.SUSPENDED and trigger == AccessTrigger.PAYMENT_SUCCEEDED:
        return AccessDecision(
            OrganizationStatus.ACTIVE,
            REASON_RECOVERED,
            NotificationKind.ACCESS_RESTORED,
            "Your payment has been confirmed. Service access has been restored.",
        )

    if (
        trigger == AccessTrigger.SUBSCRIPTION_CREATED
        and org_status in (OrganizationStatus.TRIAL, OrganizationStatus.INACTIVE)
        and subscription_status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
    ):
        return AccessDecision(
            OrganizationStatus.ACTIVE,
            REASON_ACTIVATED,
            NotificationKind.SUBSCRIPTION_CREATED,
            "Your subscription has been created successfully.",
        )

    return None


class OrganizationAccessController:
    """Applies `derive_access` inside a unit of work."""

    def __init__(
        self,
        notifier: NotificationDispatcher,
        auditor: AuditLogRecorder,
        ops: OrganizationOperations = organization_ops,
    ):
        self.notifier = notifier
        self.auditor = auditor
        self.ops = ops

    async def apply_access_policy(
        self,
        uow: UnitOfWork,
        org: Organization,
        subscription_status: SubscriptionStatus | None,
        invoice_status: InvoiceStatus | None,
        trigger: AccessTrigger,
    ) -> bool:
        """
        Change the organization's status if the policy calls for it.

        `org` must have been loaded with `get_for_update` in this unit of
        work. Returns True only for an actual change; each change writes one
        audit entry and queues one notification for after the commit.
        """
        decision = derive_access(OrganizationStatus(org.status), subscription_status, trigger)
        if decision is None:
            return False

        previous = org.status
        changed = await self.ops.set_status(uow.session, org, decision.status, decision.reason)
        if not changed:
            return False

        logger.info(
            f"[access] Org {org.id}: {previous} -> {decision.status.value} ({decision.reason})"
        )
        self.auditor.record(
            uow.session,
            AuditCategory.ORGANIZATION,
            "organization_status_change",
            {
                "previous_status": previous,
                "new_status": decision.status.value,
                "reason": decision.reason,
                "trigger": trigger.value,
                "subscription_status": subscription_status.value if subscription_status else None,
                "invoice_status": invoice_status.value if invoice_status else None,
            },
            org.id,
        )
        uow.after_commit(
            partial(
                self.notifier.notify,
                org.id,
                decision.notification,
                decision.message,
                {"reason": decision.reason, "status": decision.status.value},
            )
        )
        return True

    async def override(
        self,
        uow: UnitOfWork,
        org: Organization,
        status: OrganizationStatus,
        reason: str | None = None,
        notify: bool = False,
    ) -> bool:
        """
        Set a status chosen by an administrator rather than derived from billing.

        Same locking contract and side effects as `apply_access_policy`, except
        that the notification is only queued when `notify` is set.
        """
        previous = org.status
        changed = await self.ops.set_status(uow.session, org, status, reason)
        if not changed:
            return False

        logger.info(f"[access] Org {org.id}: {previous} -> {status.value} (admin: {reason})")
        self.auditor.record(
            uow.session,
            AuditCategory.ORGANIZATION,
            "organization_status_change",
            {
                "previous_status": previous,
                "new_status": status.value,
                "reason": reason,
                "trigger": "admin",
            },
            org.id,
        )
        if notify:
            message = f"Your account status has changed to {status.value}."
            if reason:
                message += f" Reason: {reason}"
            uow.after_commit(
                partial(
                    self.notifier.notify,
                    org.id,
                    NotificationKind.STATUS_CHANGED,
                    message,
                    {"reason": reason, "status": status.value},
                )
            )
        return True
