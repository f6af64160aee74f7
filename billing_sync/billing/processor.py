"""Webhook processing pipeline.

    verify signature -> decode -> route -> [org lock -> unit of work:
        lock org row -> claim event id -> handler] -> commit -> notifications

Exactly one `payment_webhook` audit entry is written per processed delivery,
whatever the outcome. Handler failures roll back the whole unit of work,
including the idempotency claim, so the event can be applied by a replay.
"""

import logging
import uuid as uuid_pkg
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.billing import signature
from billing_sync.billing.access_controller import OrganizationAccessController
from billing_sync.billing.events import UnknownEvent, WebhookEvent, parse_event
from billing_sync.billing.exceptions import (
    DownstreamPersistenceFailure,
    DuplicateEvent,
    MissingOrganizationMetadata,
    SignatureInvalid,
    UnknownEventType,
    WebhookError,
    WebhookOutcome,
)
from billing_sync.billing.failure_escalation import FailureEscalationCounter
from billing_sync.billing.handlers import HandlerContext
from billing_sync.billing.invoice_ledger import InvoiceLedger
from billing_sync.billing.router import EventRouter
from billing_sync.billing.subscription_lifecycle import SubscriptionLifecycle
from billing_sync.core.locks import KeyedLock, organization_locks
from billing_sync.core.unit_of_work import UnitOfWork
from billing_sync.domain.organization_operations import organization_ops
from billing_sync.domain.processed_event_operations import processed_event_ops
from billing_sync.domain.webhook_inbox_operations import webhook_inbox_ops
from billing_sync.models.audit_log import AuditCategory
from billing_sync.models.base import utcnow
from billing_sync.models.billing import WebhookInboxStatus
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.notifications import EmailTransport, NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """What happened to one delivery."""

    outcome: WebhookOutcome
    inbox_status: WebhookInboxStatus
    event_id: str | None = None
    event_type: str | None = None
    organization_id: uuid_pkg.UUID | None = None
    detail: str | None = None


class WebhookProcessor:
    """Applies captured webhook deliveries to billing state."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        secret: str,
        notifier: NotificationDispatcher,
        auditor: AuditLogRecorder,
        router: EventRouter | None = None,
        lifecycle: SubscriptionLifecycle | None = None,
        ledger: InvoiceLedger | None = None,
        escalation: FailureEscalationCounter | None = None,
        access: OrganizationAccessController | None = None,
        locks: KeyedLock = organization_locks,
    ):
        self._session_maker = session_maker
        self._secret = secret
        self.notifier = notifier
        self.auditor = auditor
        self.router = router or EventRouter()
        self.lifecycle = lifecycle or SubscriptionLifecycle()
        self.ledger = ledger or InvoiceLedger(auditor)
        self.escalation = escalation or FailureEscalationCounter()
        self.access = access or OrganizationAccessController(notifier, auditor)
        self.locks = locks

    @classmethod
    def build(
        cls,
        session_maker: async_sessionmaker[AsyncSession],
        secret: str,
        transport: EmailTransport,
    ) -> "WebhookProcessor":
        """Wire a processor with default collaborators over one session factory."""
        auditor = AuditLogRecorder(session_maker)
        notifier = NotificationDispatcher(session_maker, transport)
        return cls(session_maker, secret, notifier, auditor)

    # ─────────────────────────────────────────────────────────────────────────
    # Durable capture
    # ─────────────────────────────────────────────────────────────────────────

    async def capture(self, raw_body: bytes, signature_header: str | None) -> uuid_pkg.UUID:
        """Commit the raw delivery to the inbox. Raises if storage is unavailable."""
        async with self._session_maker() as db:
            row = await webhook_inbox_ops.capture(db, raw_body, signature_header)
            await db.commit()
        return row.id

    async def process_inbox(self, inbox_id: uuid_pkg.UUID) -> ProcessResult | None:
        """Process one captured delivery and record the outcome on its inbox row."""
        async with self._session_maker() as db:
            row = await webhook_inbox_ops.get(db, inbox_id)
        if row is None:
            logger.warning(f"[webhook] Inbox row {inbox_id} not found")
            return None

        result = await self.process(row.raw_body, row.signature)
        await self._record_inbox(inbox_id, result)
        return result

    async def reprocess_stale(
        self,
        stale_after_seconds: int,
        include_failed: bool = False,
        limit: int = 100,
    ) -> dict[str, Any]:
        """
        Replay deliveries that were captured but never finished.

        Replays go through the same pipeline, so anything already applied
        comes back as a duplicate.
        """
        cutoff = utcnow() - timedelta(seconds=stale_after_seconds)
        async with self._session_maker() as db:
            rows = await webhook_inbox_ops.list_stale(
                db, cutoff, include_failed=include_failed, limit=limit
            )
            inbox_ids = [row.id for row in rows]

        outcomes: Counter[str] = Counter()
        for inbox_id in inbox_ids:
            result = await self.process_inbox(inbox_id)
            if result is not None:
                outcomes[result.outcome.value] += 1

        if inbox_ids:
            logger.info(f"[webhook] Reprocessed {len(inbox_ids)} inbox rows: {dict(outcomes)}")
        return {"reprocessed": len(inbox_ids), "outcomes": dict(outcomes)}

    async def _record_inbox(self, inbox_id: uuid_pkg.UUID, result: ProcessResult) -> None:
        try:
            async with self._session_maker() as db:
                row = await webhook_inbox_ops.get(db, inbox_id)
                if row is None:
                    return
                await webhook_inbox_ops.record_outcome(
                    db,
                    row,
                    result.inbox_status,
                    event_id=result.event_id,
                    event_type=result.event_type,
                    error=result.detail if result.outcome == WebhookOutcome.ERROR else None,
                )
                await db.commit()
        except Exception:
            # Row stays "received" and is replayed by the stale sweep
            logger.exception(f"[webhook] Failed to record outcome for inbox row {inbox_id}")

    # ─────────────────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────────────────

    async def process(self, raw_body: bytes, signature_header: str | None) -> ProcessResult:
        """Run one delivery through the pipeline. Never raises."""
        event: WebhookEvent | UnknownEvent | None = None
        try:
            if not signature.verify(raw_body, signature_header, self._secret):
                raise SignatureInvalid("Signature missing or does not match")
            event = parse_event(raw_body)
            result = await self._apply(event)
        except WebhookError as e:
            result = self._result_from_error(e, event)

        self._log_result(result)
        await self._audit_result(result, event, len(raw_body), bool(signature_header))
        return result

    async def _apply(self, event: WebhookEvent | UnknownEvent) -> ProcessResult:
        handler = self.router.resolve(event)
        if handler is None or isinstance(event, UnknownEvent):
            raise UnknownEventType(f"Unhandled event type {event.type!r}")

        organization_id = event.organization_id
        if organization_id is None:
            raise MissingOrganizationMetadata(
                f"metadata.organization_id missing or invalid: {event.organization_reference!r}"
            )

        async with self.locks.acquire(organization_id):
            try:
                async with UnitOfWork(self._session_maker) as uow:
                    org = await organization_ops.get_for_update(uow.session, organization_id)
                    if org is None:
                        raise MissingOrganizationMetadata(
                            f"Organization {organization_id} does not exist"
                        )
                    fresh = await processed_event_ops.claim(
                        uow.session, event.event_id, event.type, organization_id
                    )
                    if not fresh:
                        raise DuplicateEvent(f"Event {event.event_id} already processed")

                    ctx = HandlerContext(
                        uow=uow,
                        organization=org,
                        lifecycle=self.lifecycle,
                        ledger=self.ledger,
                        escalation=self.escalation,
                        access=self.access,
                        notifier=self.notifier,
                        auditor=self.auditor,
                    )
                    await handler(ctx, event)
            except WebhookError:
                raise
            except SQLAlchemyError as e:
                logger.exception(f"[webhook] Persistence failure handling {event.event_id}")
                await self._log_handler_error(event, e)
                raise DownstreamPersistenceFailure(str(e)) from e
            except Exception as e:
                logger.exception(f"[webhook] Handler error for {event.event_id}")
                await self._log_handler_error(event, e)
                raise WebhookError(f"{type(e).__name__}: {e}") from e

        return ProcessResult(
            outcome=WebhookOutcome.PROCESSED,
            inbox_status=WebhookInboxStatus.PROCESSED,
            event_id=event.event_id,
            event_type=event.type,
            organization_id=organization_id,
        )

    async def _log_handler_error(self, event: WebhookEvent, error: Exception) -> None:
        await self.auditor.log_error(
            AuditCategory.WEBHOOK_HANDLER,
            error,
            {"event_id": event.event_id, "event_type": event.type},
            event.organization_id,
        )

    @staticmethod
    def _result_from_error(
        error: WebhookError,
        event: WebhookEvent | UnknownEvent | None,
    ) -> ProcessResult:
        event_id = error.event_id
        event_type = error.event_type
        organization_id = None
        if event is not None:
            event_id = event_id or event.event_id
            event_type = event_type or event.type
        if isinstance(event, WebhookEvent):
            organization_id = event.organization_id
        return ProcessResult(
            outcome=error.outcome,
            inbox_status=error.inbox_status,
            event_id=event_id,
            event_type=event_type,
            organization_id=organization_id,
            detail=error.message,
        )

    @staticmethod
    def _log_result(result: ProcessResult) -> None:
        message = (
            f"[webhook] {result.event_type or '?'} {result.event_id or '-'}: "
            f"{result.outcome.value}"
        )
        if result.outcome == WebhookOutcome.PROCESSED:
            logger.info(message)
        elif result.outcome in (WebhookOutcome.DUPLICATE, WebhookOutcome.UNKNOWN_EVENT_TYPE):
            logger.info(f"{message} ({result.detail})")
        else:
            logger.warning(f"{message} ({result.detail})")

    async def _audit_result(
        self,
        result: ProcessResult,
        event: WebhookEvent | UnknownEvent | None,
        body_size: int,
        signature_present: bool,
    ) -> None:
        action = (
            result.event_type
            if result.outcome == WebhookOutcome.PROCESSED and result.event_type
            else result.outcome.value
        )
        payload: dict[str, Any] = {
            "outcome": result.outcome.value,
            "event_id": result.event_id,
            "event_type": result.event_type,
        }
        if result.detail:
            payload["detail"] = result.detail
        if isinstance(event, WebhookEvent):
            payload["data"] = event.data.model_dump(mode="json")
        if result.outcome == WebhookOutcome.SIGNATURE_INVALID:
            payload["body_size"] = body_size
            payload["signature_present"] = signature_present

        await self.auditor.log_event(
            AuditCategory.PAYMENT_WEBHOOK, action, payload, result.organization_id
        )
