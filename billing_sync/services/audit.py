"""Audit log recorder.

Two ways in:

- ``record(db, ...)`` adds an entry to a session the caller already owns,
  so a state transition and its audit entry commit or roll back together.
- ``log_*`` methods write in a session of their own and commit straight
  away. They are for outcomes that have no unit of work (rejected
  signatures, duplicates, handler errors after rollback).

Neither path ever raises. An audit write that fails is logged and dropped;
billing state must not depend on the audit table being writable.
"""

import logging
import uuid as uuid_pkg
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.domain.audit_log_operations import audit_log_ops
from billing_sync.models.audit_log import AuditCategory

logger = logging.getLogger(__name__)


class AuditLogRecorder:
    """Append-only writer for `audit_logs`."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    def record(
        self,
        db: AsyncSession,
        category: str,
        action: str,
        payload: dict[str, Any] | None = None,
        organization_id: uuid_pkg.UUID | None = None,
    ) -> None:
        """Add an entry to an open unit of work."""
        try:
            audit_log_ops.add(
                db,
                category=category,
                action=action,
                payload=jsonable_encoder(payload or {}),
                organization_id=organization_id,
            )
        except Exception:
            logger.exception(f"[audit] Failed to stage {category}/{action}")

    async def log_event(
        self,
        category: str,
        action: str,
        payload: dict[str, Any] | None = None,
        organization_id: uuid_pkg.UUID | None = None,
    ) -> bool:
        """Write one entry in its own transaction. Returns False if it was dropped."""
        try:
            async with self._session_maker() as db:
                audit_log_ops.add(
                    db,
                    category=category,
                    action=action,
                    payload=jsonable_encoder(payload or {}),
                    organization_id=organization_id,
                )
                await db.commit()
            return True
        except Exception:
            logger.exception(
                f"[audit] Failed to write {category}/{action} (org={organization_id}): "
                f"{payload}"
            )
            return False

    async def log_error(
        self,
        category: str,
        error: BaseException | str,
        context: dict[str, Any] | None = None,
        organization_id: uuid_pkg.UUID | None = None,
    ) -> bool:
        """Record a failure under `category` with action `error`."""
        payload: dict[str, Any] = {
            "error": str(error),
            "error_type": type(error).__name__ if isinstance(error, BaseException) else None,
        }
        if context:
            payload.update(context)
        return await self.log_event(category, "error", payload, organization_id)

    async def log_payment_event(
        self,
        organization_id: uuid_pkg.UUID,
        action: str,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        return await self.log_event(AuditCategory.PAYMENT, action, payload, organization_id)

    async def log_subscription_event(
        self,
        organization_id: uuid_pkg.UUID,
        action: str,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        return await self.log_event(AuditCategory.SUBSCRIPTION, action, payload, organization_id)

    async def log_invoice_event(
        self,
        organization_id: uuid_pkg.UUID,
        action: str,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        return await self.log_event(AuditCategory.INVOICE, action, payload, organization_id)
