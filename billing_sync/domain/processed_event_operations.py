"""Domain operations for the webhook idempotency ledger."""

import uuid as uuid_pkg

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.database import dialect_insert
from billing_sync.models.base import utcnow
from billing_sync.models.billing import ProcessedEvent


class ProcessedEventOperations:
    """Claim-once storage for processor event IDs."""

    async def claim(
        self,
        db: AsyncSession,
        event_id: str,
        event_type: str,
        organization_id: uuid_pkg.UUID | None = None,
    ) -> bool:
        """
        Record an event ID as processed. Returns True if this call inserted it.

        One conditional insert: concurrent claims of the same ID resolve in
        the database, and exactly one of them sees True. The claim belongs
        to the caller's transaction, so a rollback releases it again.
        """
        statement = (
            dialect_insert(db, ProcessedEvent)
            .values(
                event_id=event_id,
                event_type=event_type,
                organization_id=organization_id,
                processed_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(ProcessedEvent.event_id)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def exists(
        self,
        db: AsyncSession,
        event_id: str,
    ) -> bool:
        """Check whether an event ID has already been processed."""
        statement = select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None


processed_event_ops = ProcessedEventOperations()
