"""Domain operations for Subscription model."""

import uuid as uuid_pkg
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.subscription import Subscription, SubscriptionStatus


class SubscriptionOperations:
    """CRUD operations for Subscription model."""

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Subscription | None:
        """Get a subscription by ID."""
        statement = select(Subscription).where(Subscription.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_processor_id(
        self,
        db: AsyncSession,
        processor_subscription_id: str,
    ) -> Subscription | None:
        """Get a subscription by the payment processor's subscription ID."""
        statement = select(Subscription).where(
            Subscription.processor_subscription_id == processor_subscription_id
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_current_for_org(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
    ) -> Subscription | None:
        """Get the organization's live (non-canceled) subscription, newest first."""
        statement = (
            select(Subscription)
            .where(
                Subscription.organization_id == organization_id,
                Subscription.status != SubscriptionStatus.CANCELED.value,
            )
            .order_by(Subscription.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def resolve(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        processor_subscription_id: str | None,
    ) -> Subscription | None:
        """
        Find the subscription an event refers to.

        Looks up by processor subscription ID first, then falls back to the
        organization's current subscription. A processor ID that belongs to
        another organization resolves to nothing.
        """
        if processor_subscription_id:
            subscription = await self.get_by_processor_id(db, processor_subscription_id)
            if subscription is not None:
                if subscription.organization_id != organization_id:
                    return None
                return subscription
        return await self.get_current_for_org(db, organization_id)

    async def create(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        status: str = SubscriptionStatus.INCOMPLETE.value,
        **fields: Any,
    ) -> Subscription:
        """Create a subscription for an organization."""
        subscription = Subscription(organization_id=organization_id, status=status, **fields)
        db.add(subscription)
        await db.flush()
        await db.refresh(subscription)
        return subscription

    async def update(
        self,
        db: AsyncSession,
        subscription: Subscription,
        updates: dict[str, Any],
    ) -> Subscription:
        """Update a subscription."""
        for field, value in updates.items():
            if value is not None:
                setattr(subscription, field, value)
        db.add(subscription)
        await db.flush()
        return subscription


subscription_ops = SubscriptionOperations()
