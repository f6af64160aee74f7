"""Consecutive payment failure tracking.

Three failures in a row with no successful payment in between suspend the
organization. The count lives in `payment_failure_counts` and is changed
only by atomic statements, never read-modify-write.
"""

import uuid as uuid_pkg

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.domain.failure_count_operations import FailureCountOperations, failure_count_ops

SUSPEND_THRESHOLD = 3


class FailureEscalationCounter:
    def __init__(self, ops: FailureCountOperations = failure_count_ops):
        self.ops = ops

    async def increment(self, db: AsyncSession, organization_id: uuid_pkg.UUID) -> int:
        return await self.ops.increment(db, organization_id)

    async def reset(self, db: AsyncSession, organization_id: uuid_pkg.UUID) -> None:
        await self.ops.reset(db, organization_id)

    async def get(self, db: AsyncSession, organization_id: uuid_pkg.UUID) -> int:
        return await self.ops.get(db, organization_id)

    @staticmethod
    def should_suspend(count: int) -> bool:
        return count >= SUSPEND_THRESHOLD

    @staticmethod
    def crossed_threshold(count: int) -> bool:
        """True only for the failure that reaches the threshold."""
        return count == SUSPEND_THRESHOLD
