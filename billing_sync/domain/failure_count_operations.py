"""Domain operations for per-organization payment failure counters."""

import uuid as uuid_pkg

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.database import dialect_insert
from billing_sync.models.base import utcnow
from billing_sync.models.billing import PaymentFailureCount


class FailureCountOperations:
    """Atomic counter storage backing failure escalation."""

    async def increment(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
    ) -> int:
        """
        Add one failure and return the new count.

        A single upsert, so two concurrent failures for the same
        organization can never both read the same old value.
        """
        now = utcnow()
        statement = (
            dialect_insert(db, PaymentFailureCount)
            .values(organization_id=organization_id, count=1, last_event_at=now)
            .on_conflict_do_update(
                index_elements=["organization_id"],
                set_={"count": PaymentFailureCount.count + 1, "last_event_at": now},
            )
            .returning(PaymentFailureCount.count)
        )
        result = await db.execute(statement)
        return int(result.scalar_one())

    async def reset(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
    ) -> None:
        """Zero the counter. Organizations that never failed have no row."""
        statement = (
            update(PaymentFailureCount)
            .where(PaymentFailureCount.organization_id == organization_id)
            .values(count=0, last_event_at=utcnow())
        )
        await db.execute(statement)

    async def get(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
    ) -> int:
        """Get the current count (0 if the organization never failed)."""
        statement = select(PaymentFailureCount.count).where(
            PaymentFailureCount.organization_id == organization_id
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() or 0


failure_count_ops = FailureCountOperations()
