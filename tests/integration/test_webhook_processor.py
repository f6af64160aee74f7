"""End-to-end webhook processing against a real database.

Deliveries are built with `make_event`, signed with the test secret and
fed to `WebhookProcessor.process` exactly as the gateway would.
"""

from __future__ import annotations

import asyncio
import uuid

import pytest

from billing_sync.billing.exceptions import WebhookOutcome
from billing_sync.billing.processor import WebhookProcessor
from billing_sync.billing.router import DEFAULT_ROUTES, EventRouter
from billing_sync.domain import failure_count_ops
from billing_sync.models.audit_log import AuditCategory, AuditLogEntry
from billing_sync.models.billing import ProcessedEvent, WebhookInbox, WebhookInboxStatus
from billing_sync.models.invoice import Invoice
from billing_sync.models.notification_log import NotificationKind
from billing_sync.models.organization import Organization
from billing_sync.models.subscription import Subscription
from billing_sync.services.audit import AuditLogRecorder
from billing_sync.services.notifications import NotificationDispatcher

from tests.helpers.db import count, fetch_all, fetch_one
from tests.helpers.webhooks import TEST_WEBHOOK_SECRET, make_event, sign


async def deliver(processor, payload, secret: str = TEST_WEBHOOK_SECRET):
    raw, signature_header = sign(payload, secret)
    return await processor.process(raw, signature_header)


async def webhook_audit(session_maker, *where) -> list[AuditLogEntry]:
    return await fetch_all(
        session_maker,
        AuditLogEntry,
        AuditLogEntry.category == AuditCategory.PAYMENT_WEBHOOK,
        *where,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Rejections
# ─────────────────────────────────────────────────────────────────────────────


class TestRejectedDeliveries:
    @pytest.mark.asyncio
    async def test_bad_signature_changes_nothing(self, processor, session_maker, test_org):
        payload = make_event("subscription_canceled", test_org.id, subscription_id="sub_test")

        result = await deliver(processor, payload, secret="whsec_wrong")

        assert result.outcome == WebhookOutcome.SIGNATURE_INVALID
        assert result.inbox_status == WebhookInboxStatus.REJECTED
        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        assert org.status == "active"
        assert await count(session_maker, ProcessedEvent) == 0

        (entry,) = await webhook_audit(session_maker)
        assert entry.action == "signature_invalid"
        assert entry.organization_id is None
        assert entry.payload["signature_present"] is True
        assert entry.payload["body_size"] > 0

    @pytest.mark.asyncio
    async def test_missing_signature_header(self, processor, session_maker):
        raw, _ = sign(make_event("charge_finished", uuid.uuid4()))

        result = await processor.process(raw, None)

        assert result.outcome == WebhookOutcome.SIGNATURE_INVALID
        (entry,) = await webhook_audit(session_maker)
        assert entry.payload["signature_present"] is False

    @pytest.mark.asyncio
    async def test_malformed_json(self, processor, session_maker):
        result = await deliver(processor, b"{not json")

        assert result.outcome == WebhookOutcome.MALFORMED_PAYLOAD
        assert result.inbox_status == WebhookInboxStatus.REJECTED
        (entry,) = await webhook_audit(session_maker)
        assert entry.action == "malformed_payload"

    @pytest.mark.asyncio
    async def test_known_type_missing_data_id(self, processor, test_org):
        payload = {"type": "charge_finished", "data": {"metadata": {"organization_id": str(test_org.id)}}}

        result = await deliver(processor, payload)

        assert result.outcome == WebhookOutcome.MALFORMED_PAYLOAD
        assert result.event_type == "charge_finished"

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, processor, session_maker, test_org):
        result = await deliver(processor, make_event("customer_updated", test_org.id))

        assert result.outcome == WebhookOutcome.UNKNOWN_EVENT_TYPE
        assert result.inbox_status == WebhookInboxStatus.IGNORED
        assert await count(session_maker, ProcessedEvent) == 0
        (entry,) = await webhook_audit(session_maker)
        assert entry.action == "unknown_event_type"
        assert entry.payload["event_type"] == "customer_updated"

    @pytest.mark.asyncio
    async def test_missing_organization_metadata(self, processor, session_maker):
        result = await deliver(processor, make_event("subscription_payment", None))

        assert result.outcome == WebhookOutcome.MISSING_ORGANIZATION
        assert result.inbox_status == WebhookInboxStatus.IGNORED
        assert await count(session_maker, ProcessedEvent) == 0

    @pytest.mark.asyncio
    async def test_organization_id_not_a_uuid(self, processor):
        payload = make_event("subscription_payment", None, metadata={"organization_id": "42"})

        result = await deliver(processor, payload)

        assert result.outcome == WebhookOutcome.MISSING_ORGANIZATION
        assert "42" in result.detail

    @pytest.mark.asyncio
    async def test_unknown_organization(self, processor, session_maker, transport):
        ghost = uuid.uuid4()

        result = await deliver(processor, make_event("subscription_failure", ghost))

        assert result.outcome == WebhookOutcome.MISSING_ORGANIZATION
        assert await count(session_maker, ProcessedEvent) == 0
        assert transport.sent == []
        (entry,) = await webhook_audit(session_maker)
        assert entry.organization_id == ghost


# ─────────────────────────────────────────────────────────────────────────────
# Idempotency
# ─────────────────────────────────────────────────────────────────────────────


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_redelivery_applies_once(
        self, processor, session_maker, transport, test_org, test_subscription
    ):
        raw, signature_header = sign(
            make_event("subscription_failure", test_org.id, event_id="evt_fail_1",
                       subscription_id="sub_test")
        )

        outcomes = [(await processor.process(raw, signature_header)).outcome for _ in range(4)]

        assert outcomes == [WebhookOutcome.PROCESSED] + [WebhookOutcome.DUPLICATE] * 3
        assert await count(session_maker, ProcessedEvent) == 1
        async with session_maker() as db:
            assert await failure_count_ops.get(db, test_org.id) == 1
        assert transport.tags == ["payment_failure"]

        entries = await webhook_audit(session_maker)
        assert len(entries) == 4
        assert sorted(entry.action for entry in entries) == [
            "duplicate",
            "duplicate",
            "duplicate",
            "subscription_failure",
        ]

    @pytest.mark.asyncio
    async def test_same_object_new_status_is_a_new_event(
        self, processor, session_maker, test_org, test_invoice
    ):
        meta = {"invoice_id": str(test_invoice.id)}
        pending = make_event("charge_updated", test_org.id, data_id="chg_1", metadata=meta,
                             status="pending")
        finished = make_event("charge_finished", test_org.id, data_id="chg_1", metadata=meta,
                              status="successful")

        assert (await deliver(processor, pending)).outcome == WebhookOutcome.PROCESSED
        assert (await deliver(processor, finished)).outcome == WebhookOutcome.PROCESSED
        assert (await deliver(processor, finished)).outcome == WebhookOutcome.DUPLICATE

        invoice = await fetch_one(session_maker, Invoice, Invoice.id == test_invoice.id)
        assert invoice.status == "paid"

    @pytest.mark.asyncio
    async def test_concurrent_redeliveries_apply_once(
        self, processor, session_maker, transport, test_org, test_subscription
    ):
        raw, signature_header = sign(
            make_event("subscription_failure", test_org.id, event_id="evt_burst",
                       subscription_id="sub_test")
        )

        results = await asyncio.gather(
            *(processor.process(raw, signature_header) for _ in range(5))
        )

        outcomes = sorted(result.outcome.value for result in results)
        assert outcomes == ["duplicate"] * 4 + ["processed"]
        assert await count(session_maker, ProcessedEvent) == 1
        async with session_maker() as db:
            assert await failure_count_ops.get(db, test_org.id) == 1
        assert transport.tags == ["payment_failure"]


# ─────────────────────────────────────────────────────────────────────────────
# Failure escalation and recovery
# ─────────────────────────────────────────────────────────────────────────────


class TestEscalation:
    async def _fail(self, processor, org_id):
        return await deliver(
            processor, make_event("subscription_failure", org_id, subscription_id="sub_test")
        )

    @pytest.mark.asyncio
    async def test_third_failure_suspends(
        self, processor, session_maker, transport, test_org, test_subscription
    ):
        for _ in range(2):
            await self._fail(processor, test_org.id)

        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        sub = await fetch_one(session_maker, Subscription, Subscription.id == test_subscription.id)
        assert org.status == "active"
        assert sub.status == "past_due"

        await self._fail(processor, test_org.id)

        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        sub = await fetch_one(session_maker, Subscription, Subscription.id == test_subscription.id)
        assert org.status == "suspended"
        assert org.status_reason == "payment failure escalation"
        assert sub.status == "suspended"
        assert transport.tags == ["payment_failure", "payment_failure", "access_suspended"]

        changes = await fetch_all(
            session_maker, AuditLogEntry, AuditLogEntry.action == "organization_status_change"
        )
        assert len(changes) == 1
        assert changes[0].payload["new_status"] == "suspended"

    @pytest.mark.asyncio
    async def test_further_failures_stay_quiet(
        self, processor, session_maker, transport, test_org, test_subscription
    ):
        for _ in range(4):
            await self._fail(processor, test_org.id)

        assert len(transport.sent) == 3
        async with session_maker() as db:
            assert await failure_count_ops.get(db, test_org.id) == 4
        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        assert org.status == "suspended"

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(
        self, processor, session_maker, transport, test_org, test_subscription
    ):
        results = await asyncio.gather(*(self._fail(processor, test_org.id) for _ in range(4)))

        assert all(result.outcome == WebhookOutcome.PROCESSED for result in results)
        async with session_maker() as db:
            assert await failure_count_ops.get(db, test_org.id) == 4
        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        assert org.status == "suspended"
        assert transport.tags.count("access_suspended") == 1
        assert transport.tags.count("payment_failure") == 2
        assert await count(
            session_maker, AuditLogEntry, AuditLogEntry.action == "organization_status_change"
        ) == 1

    @pytest.mark.asyncio
    async def test_payment_restores_access_and_resets_count(
        self, processor, session_maker, transport, test_org, test_subscription
    ):
        for _ in range(3):
            await self._fail(processor, test_org.id)

        result = await deliver(
            processor, make_event("subscription_payment", test_org.id, subscription_id="sub_test")
        )

        assert result.outcome == WebhookOutcome.PROCESSED
        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        sub = await fetch_one(session_maker, Subscription, Subscription.id == test_subscription.id)
        assert org.status == "active"
        assert sub.status == "active"
        async with session_maker() as db:
            assert await failure_count_ops.get(db, test_org.id) == 0
        assert transport.tags[-1] == "access_restored"

    @pytest.mark.asyncio
    async def test_success_between_failures_restarts_count(
        self, processor, session_maker, test_org, test_subscription
    ):
        await self._fail(processor, test_org.id)
        await self._fail(processor, test_org.id)
        await deliver(
            processor, make_event("subscription_payment", test_org.id, subscription_id="sub_test")
        )
        await self._fail(processor, test_org.id)
        await self._fail(processor, test_org.id)

        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        assert org.status == "active"


# ─────────────────────────────────────────────────────────────────────────────
# Ordering and terminal states
# ─────────────────────────────────────────────────────────────────────────────


class TestOrdering:
    def _events(self, org_id, invoice_id):
        meta = {"invoice_id": str(invoice_id)}
        failed = make_event("charge_finished", org_id, data_id="chg_9", metadata=meta,
                            status="failed")
        paid = make_event("subscription_payment", org_id, metadata=meta,
                          subscription_id="sub_test")
        return failed, paid

    @pytest.mark.asyncio
    async def test_failure_then_payment_ends_paid(
        self, processor, session_maker, test_org, test_invoice
    ):
        failed, paid = self._events(test_org.id, test_invoice.id)
        await deliver(processor, failed)
        await deliver(processor, paid)

        invoice = await fetch_one(session_maker, Invoice, Invoice.id == test_invoice.id)
        assert invoice.status == "paid"
        assert invoice.paid_at is not None

    @pytest.mark.asyncio
    async def test_payment_then_late_failure_ends_paid(
        self, processor, session_maker, test_org, test_invoice
    ):
        failed, paid = self._events(test_org.id, test_invoice.id)
        await deliver(processor, paid)
        await deliver(processor, failed)

        invoice = await fetch_one(session_maker, Invoice, Invoice.id == test_invoice.id)
        assert invoice.status == "paid"

    @pytest.mark.asyncio
    async def test_refund_of_void_invoice_is_audited_not_applied(
        self, processor, session_maker, test_org, test_invoice
    ):
        async with session_maker() as db:
            invoice = await db.get(Invoice, test_invoice.id)
            invoice.status = "void"
            await db.commit()

        result = await deliver(
            processor,
            make_event("refund_finished", test_org.id, status="successful",
                       metadata={"invoice_id": test_invoice.invoice_number}),
        )

        assert result.outcome == WebhookOutcome.PROCESSED
        invoice = await fetch_one(session_maker, Invoice, Invoice.id == test_invoice.id)
        assert invoice.status == "void"
        (entry,) = await fetch_all(
            session_maker, AuditLogEntry, AuditLogEntry.action == "invoice_inconsistency"
        )
        assert entry.payload["current_status"] == "void"
        assert entry.payload["attempted_status"] == "refunded"

    @pytest.mark.asyncio
    async def test_payment_after_cancel_keeps_org_inactive(
        self, processor, session_maker, transport, test_org, test_subscription
    ):
        await deliver(
            processor, make_event("subscription_canceled", test_org.id, subscription_id="sub_test")
        )
        await deliver(
            processor, make_event("subscription_payment", test_org.id, subscription_id="sub_test")
        )

        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        sub = await fetch_one(session_maker, Subscription, Subscription.id == test_subscription.id)
        assert org.status == "inactive"
        assert sub.status == "canceled"
        assert sub.canceled_at is not None
        assert transport.tags == ["subscription_canceled"]

    @pytest.mark.asyncio
    async def test_deleted_organization_is_never_reactivated(
        self, processor, session_maker, test_org, test_subscription
    ):
        async with session_maker() as db:
            org = await db.get(Organization, test_org.id)
            org.status = "deleted"
            await db.commit()

        for event_type in ("subscription_suspended", "subscription_payment", "subscription_canceled"):
            await deliver(processor, make_event(event_type, test_org.id, subscription_id="sub_test"))

        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        assert org.status == "deleted"


# ─────────────────────────────────────────────────────────────────────────────
# Handler failures and replay
# ─────────────────────────────────────────────────────────────────────────────


async def _count_then_explode(ctx, event):
    await ctx.escalation.increment(ctx.db, ctx.organization.id)
    ctx.notify(NotificationKind.PAYMENT_FAILURE, "should never be sent")
    raise RuntimeError("boom")


class TestHandlerFailure:
    @pytest.fixture
    def failing_processor(self, session_maker, transport):
        auditor = AuditLogRecorder(session_maker)
        notifier = NotificationDispatcher(session_maker, transport)
        router = EventRouter({**DEFAULT_ROUTES, "subscription_failure": _count_then_explode})
        return WebhookProcessor(session_maker, TEST_WEBHOOK_SECRET, notifier, auditor, router=router)

    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(
        self, failing_processor, session_maker, transport, test_org, test_subscription
    ):
        result = await deliver(
            failing_processor,
            make_event("subscription_failure", test_org.id, subscription_id="sub_test"),
        )

        assert result.outcome == WebhookOutcome.ERROR
        assert result.inbox_status == WebhookInboxStatus.FAILED
        assert "boom" in result.detail
        assert await count(session_maker, ProcessedEvent) == 0
        async with session_maker() as db:
            assert await failure_count_ops.get(db, test_org.id) == 0
        assert transport.sent == []

        (error,) = await fetch_all(
            session_maker,
            AuditLogEntry,
            AuditLogEntry.category == AuditCategory.WEBHOOK_HANDLER,
        )
        assert error.action == "error"
        assert error.payload["error_type"] == "RuntimeError"
        (entry,) = await webhook_audit(session_maker)
        assert entry.action == "error"

    @pytest.mark.asyncio
    async def test_failed_delivery_is_replayed(
        self, failing_processor, processor, session_maker, transport, test_org, test_subscription
    ):
        raw, signature_header = sign(
            make_event("subscription_failure", test_org.id, subscription_id="sub_test")
        )
        inbox_id = await failing_processor.capture(raw, signature_header)
        await failing_processor.process_inbox(inbox_id)

        row = await fetch_one(session_maker, WebhookInbox, WebhookInbox.id == inbox_id)
        assert row.status == "failed"
        assert row.attempts == 1

        # Failed rows are only replayed on request
        assert (await processor.reprocess_stale(0))["reprocessed"] == 0

        summary = await processor.reprocess_stale(0, include_failed=True)

        assert summary == {"reprocessed": 1, "outcomes": {"processed": 1}}
        row = await fetch_one(session_maker, WebhookInbox, WebhookInbox.id == inbox_id)
        assert row.status == "processed"
        assert row.attempts == 2
        assert row.last_error is None
        async with session_maker() as db:
            assert await failure_count_ops.get(db, test_org.id) == 1
        assert transport.tags == ["payment_failure"]


class TestInbox:
    @pytest.mark.asyncio
    async def test_process_inbox_records_outcome(self, processor, session_maker, test_org):
        raw, signature_header = sign(make_event("customer_updated", test_org.id, event_id="evt_x"))
        inbox_id = await processor.capture(raw, signature_header)

        await processor.process_inbox(inbox_id)

        row = await fetch_one(session_maker, WebhookInbox, WebhookInbox.id == inbox_id)
        assert row.status == "ignored"
        assert row.event_id == "evt_x"
        assert row.event_type == "customer_updated"
        assert row.processed_at is not None

    @pytest.mark.asyncio
    async def test_abandoned_delivery_is_picked_up(
        self, processor, session_maker, test_org, test_subscription
    ):
        raw, signature_header = sign(
            make_event("subscription_suspended", test_org.id, subscription_id="sub_test")
        )
        await processor.capture(raw, signature_header)

        summary = await processor.reprocess_stale(0)

        assert summary["reprocessed"] == 1
        org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
        assert org.status == "suspended"

    @pytest.mark.asyncio
    async def test_process_inbox_unknown_row(self, processor):
        assert await processor.process_inbox(uuid.uuid4()) is None
