"""Domain operations for Organization model."""

import uuid as uuid_pkg
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.base import utcnow
from billing_sync.models.organization import Organization, OrganizationStatus


class OrganizationOperations:
    """CRUD operations for Organization model."""

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Organization | None:
        """Get an organization by ID."""
        statement = select(Organization).where(Organization.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_for_update(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Organization | None:
        """
        Get an organization and lock its row until the transaction ends.

        This is the cross-process half of per-organization serialization;
        the in-process half is `core.locks.organization_lock`. Any write to
        an organization's billing state happens after this call, in the
        same transaction.
        """
        statement = (
            select(Organization)
            .where(Organization.id == id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_many(
        self,
        db: AsyncSession,
        ids: list[uuid_pkg.UUID],
    ) -> list[Organization]:
        """Get organizations by a list of IDs (missing IDs are skipped)."""
        if not ids:
            return []
        statement = select(Organization).where(Organization.id.in_(ids))  # type: ignore[attr-defined]
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def create(
        self,
        db: AsyncSession,
        name: str,
        billing_contact_email: str,
        status: str = OrganizationStatus.TRIAL.value,
        trial_ends_at: datetime | None = None,
    ) -> Organization:
        """Create an organization."""
        org = Organization(
            name=name,
            billing_contact_email=billing_contact_email,
            status=status,
            trial_ends_at=trial_ends_at,
        )
        db.add(org)
        await db.flush()
        await db.refresh(org)
        return org

    async def set_status(
        self,
        db: AsyncSession,
        org: Organization,
        status: OrganizationStatus,
        reason: str | None = None,
    ) -> bool:
        """
        Set an organization's access status.

        Returns True if the status actually changed. Setting the current
        status again is a no-op and leaves the reason untouched.
        """
        if org.status == status.value:
            return False

        org.status = status.value
        org.status_reason = reason
        org.status_changed_at = utcnow()
        db.add(org)
        await db.flush()
        return True

    async def extend_trial(
        self,
        db: AsyncSession,
        org: Organization,
        days: int,
    ) -> datetime:
        """
        Push an organization's trial end date back by `days`.

        An organization without a trial end date gets one counted from now.
        Returns the new trial end date.
        """
        base = org.trial_ends_at or utcnow()
        org.trial_ends_at = base + timedelta(days=days)
        db.add(org)
        await db.flush()
        return org.trial_ends_at


organization_ops = OrganizationOperations()
