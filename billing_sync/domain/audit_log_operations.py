"""Domain operations for the audit log."""

import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.audit_log import AuditLogEntry


class AuditLogOperations:
    """Append and query operations for AuditLogEntry. There is no update or delete."""

    def add(
        self,
        db: AsyncSession,
        category: str,
        action: str,
        payload: dict[str, Any] | None = None,
        organization_id: uuid_pkg.UUID | None = None,
    ) -> AuditLogEntry:
        """Add an entry to the session; it is written with the session's next flush."""
        entry = AuditLogEntry(
            category=category,
            action=action,
            payload=payload or {},
            organization_id=organization_id,
        )
        db.add(entry)
        return entry

    def _filtered(
        self,
        statement: Any,
        category: str | None,
        action: str | None,
        organization_id: uuid_pkg.UUID | None,
        start: datetime | None,
        end: datetime | None,
    ) -> Any:
        if category:
            statement = statement.where(AuditLogEntry.category == category)
        if action:
            statement = statement.where(AuditLogEntry.action == action)
        if organization_id:
            statement = statement.where(AuditLogEntry.organization_id == organization_id)
        if start:
            statement = statement.where(AuditLogEntry.timestamp >= start)
        if end:
            statement = statement.where(AuditLogEntry.timestamp <= end)
        return statement

    async def search(
        self,
        db: AsyncSession,
        category: str | None = None,
        action: str | None = None,
        organization_id: uuid_pkg.UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> tuple[list[AuditLogEntry], int]:
        """
        Search audit entries, newest first.

        Returns (entries, total) where total counts every match ignoring
        pagination.
        """
        statement = self._filtered(
            select(AuditLogEntry), category, action, organization_id, start, end
        )
        statement = (
            statement.order_by(AuditLogEntry.timestamp.desc())  # type: ignore[attr-defined]
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        entries = list(result.scalars().all())

        count_statement = self._filtered(
            select(func.count()).select_from(AuditLogEntry),
            category,
            action,
            organization_id,
            start,
            end,
        )
        total = (await db.execute(count_statement)).scalar_one()
        return entries, total


audit_log_ops = AuditLogOperations()
