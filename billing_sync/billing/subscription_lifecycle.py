"""Subscription state machine.

    incomplete -> trialing | active
    trialing   -> active | past_due
    active     -> past_due | suspended
    past_due   -> active | suspended
    suspended  -> active            (successful payment only)
    *          -> canceled          (terminal, no outgoing edges)

Transitions return the resulting status. They never touch the organization;
the caller hands the result to OrganizationAccessController.
"""

import logging
import uuid as uuid_pkg
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.billing.events import SubscriptionCreated
from billing_sync.billing.failure_escalation import SUSPEND_THRESHOLD
from billing_sync.domain.subscription_operations import SubscriptionOperations, subscription_ops
from billing_sync.models.base import utcnow
from billing_sync.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.SUSPENDED, S.CANCELED}),
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.SUSPENDED, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.SUSPENDED, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.SUSPENDED, S.CANCELED}),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
}

# Statuses a successful payment moves to active
RECOVERABLE = frozenset({S.INCOMPLETE, S.TRIALING, S.PAST_DUE, S.SUSPENDED})

# Processor statuses on subscription_created that mean "not yet paid"
_PENDING_PROCESSOR_STATUSES = frozenset({"pending", "incomplete", "unverified"})


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def status_after_failure(failure_count: int) -> SubscriptionStatus:
    """Status a subscription lands in after its `failure_count`-th consecutive failure."""
    return S.PAST_DUE if failure_count < SUSPEND_THRESHOLD else S.SUSPENDED


def initial_status(processor_status: str | None) -> SubscriptionStatus:
    if processor_status == "trialing":
        return S.TRIALING
    if processor_status in _PENDING_PROCESSOR_STATUSES:
        return S.INCOMPLETE
    return S.ACTIVE


class SubscriptionLifecycle:
    """Applies processor events to a Subscription row."""

    def __init__(self, ops: SubscriptionOperations = subscription_ops):
        self.ops = ops

    async def _transition(
        self,
        db: AsyncSession,
        subscription: Subscription,
        target: SubscriptionStatus,
    ) -> SubscriptionStatus:
        current = SubscriptionStatus(subscription.status)
        if current == target:
            return current
        if not can_transition(current, target):
            logger.info(
                f"[subscription] Ignoring {current.value} -> {target.value} "
                f"for subscription {subscription.id}"
            )
            return current

        subscription.status = target.value
        if target == S.CANCELED:
            subscription.canceled_at = utcnow()
        db.add(subscription)
        await db.flush()
        logger.info(
            f"[subscription] {subscription.id}: {current.value} -> {target.value}"
        )
        return target

    async def on_created(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        event: SubscriptionCreated,
    ) -> tuple[Subscription, bool]:
        """
        Create the local subscription for a processor subscription.

        Idempotent on the processor subscription id: a second delivery (even
        under a different event id) returns the existing row untouched.
        Returns (subscription, created).
        """
        existing = await self.ops.get_by_processor_id(db, event.data.id)
        if existing is not None:
            return existing, False

        data = event.data
        next_payment = data.subscription.next_payment if data.subscription else None
        subscription = await self.ops.create(
            db,
            organization_id=organization_id,
            status=initial_status(data.status).value,
            processor_subscription_id=data.id,
            plan_id=data.metadata.plan_id,
            price_id=data.metadata.price_id,
            total_amount=data.amount if data.amount is not None else Decimal("0"),
            currency=(data.currency or "JPY").upper(),
            current_period_start=utcnow(),
            current_period_end=next_payment,
        )
        logger.info(
            f"[subscription] Created {subscription.id} ({subscription.status}) "
            f"for org {organization_id}"
        )
        return subscription, True

    async def on_payment_success(
        self,
        db: AsyncSession,
        subscription: Subscription,
    ) -> SubscriptionStatus:
        current = SubscriptionStatus(subscription.status)
        if current in RECOVERABLE:
            return await self._transition(db, subscription, S.ACTIVE)
        return current

    async def on_payment_failure(
        self,
        db: AsyncSession,
        subscription: Subscription,
        failure_count: int,
    ) -> SubscriptionStatus:
        """`failure_count` is the organization's count after this failure was added."""
        return await self._transition(db, subscription, status_after_failure(failure_count))

    async def on_suspended(
        self,
        db: AsyncSession,
        subscription: Subscription,
    ) -> SubscriptionStatus:
        return await self._transition(db, subscription, S.SUSPENDED)

    async def on_canceled(
        self,
        db: AsyncSession,
        subscription: Subscription,
    ) -> SubscriptionStatus:
        return await self._transition(db, subscription, S.CANCELED)
