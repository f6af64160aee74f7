"""Domain operations for the durable webhook inbox."""

import uuid as uuid_pkg
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.base import utcnow
from billing_sync.models.billing import WebhookInbox, WebhookInboxStatus

# Failed deliveries are only replayed on request, and not forever
MAX_INBOX_ATTEMPTS = 5


class WebhookInboxOperations:
    """CRUD operations for WebhookInbox model."""

    async def capture(
        self,
        db: AsyncSession,
        raw_body: bytes,
        signature: str | None,
    ) -> WebhookInbox:
        """Store a delivery exactly as received."""
        row = WebhookInbox(raw_body=raw_body, signature=signature)
        db.add(row)
        await db.flush()
        await db.refresh(row)
        return row

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> WebhookInbox | None:
        """Get an inbox row by ID."""
        statement = select(WebhookInbox).where(WebhookInbox.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def record_outcome(
        self,
        db: AsyncSession,
        row: WebhookInbox,
        status: WebhookInboxStatus,
        event_id: str | None = None,
        event_type: str | None = None,
        error: str | None = None,
    ) -> WebhookInbox:
        """Record the result of one processing attempt."""
        row.status = status.value
        row.attempts += 1
        row.last_error = error[:1000] if error else None
        if event_id is not None:
            row.event_id = event_id
        if event_type is not None:
            row.event_type = event_type
        row.processed_at = utcnow()
        db.add(row)
        await db.flush()
        return row

    async def list_stale(
        self,
        db: AsyncSession,
        received_before: datetime,
        include_failed: bool = False,
        limit: int = 100,
    ) -> list[WebhookInbox]:
        """
        Get deliveries that need (re)processing, oldest first.

        Rows still `received` after the cutoff were abandoned mid-flight.
        With `include_failed`, rows whose handler errored are retried too,
        up to MAX_INBOX_ATTEMPTS.
        """
        condition = WebhookInbox.status == WebhookInboxStatus.RECEIVED.value
        if include_failed:
            condition = or_(
                condition,
                (WebhookInbox.status == WebhookInboxStatus.FAILED.value)
                & (WebhookInbox.attempts < MAX_INBOX_ATTEMPTS),
            )
        statement = (
            select(WebhookInbox)
            .where(condition, WebhookInbox.received_at < received_before)
            .order_by(WebhookInbox.received_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


webhook_inbox_ops = WebhookInboxOperations()
