"""Domain operations for NotificationLog model."""

import uuid as uuid_pkg
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.notification_log import NotificationLog


class NotificationLogOperations:
    async def create(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        kind: str,
        message: str,
        status: str,
        recipient: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> NotificationLog:
        """Record one notification attempt."""
        log = NotificationLog(
            organization_id=organization_id,
            kind=kind,
            message=message[:2000],
            status=status,
            recipient=recipient,
            error=error[:1000] if error else None,
            metadata_=metadata or {},
        )
        db.add(log)
        await db.flush()
        return log

    async def list_for_org(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        limit: int = 50,
    ) -> list[NotificationLog]:
        """Get an organization's notification history, newest first."""
        statement = (
            select(NotificationLog)
            .where(NotificationLog.organization_id == organization_id)
            .order_by(NotificationLog.sent_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


notification_log_ops = NotificationLogOperations()
