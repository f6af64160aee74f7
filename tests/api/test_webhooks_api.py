"""Payment webhook endpoint tests."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from sqlalchemy import Text

from billing_sync.billing.gateway import drain_inflight
from billing_sync.billing.processor import WebhookProcessor
from billing_sync.billing.signature import SIGNATURE_HEADER
from billing_sync.config import settings
from billing_sync.models.billing import WebhookInbox
from billing_sync.models.organization import Organization

from tests.helpers.db import fetch_all, fetch_one
from tests.helpers.webhooks import make_event, sign

URL = "/webhook/payment"


async def post_event(client: AsyncClient, payload, secret: str | None = None):
    raw, signature_header = sign(payload) if secret is None else sign(payload, secret)
    resp = await client.post(
        URL,
        content=raw,
        headers={SIGNATURE_HEADER: signature_header, "Content-Type": "application/json"},
    )
    await drain_inflight(5)
    return resp


@pytest.mark.asyncio
async def test_valid_event_is_applied(
    api_client: AsyncClient, session_maker, test_org, test_subscription
):
    """POST /webhook/payment applies a signed event and acknowledges it."""
    resp = await post_event(
        api_client, make_event("subscription_suspended", test_org.id, subscription_id="sub_test")
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
    assert org.status == "suspended"
    (row,) = await fetch_all(session_maker, WebhookInbox)
    assert row.status == "processed"


@pytest.mark.asyncio
async def test_bad_signature_still_acknowledged(api_client: AsyncClient, session_maker, test_org):
    """A forged delivery gets 200 so it is not retried, but changes nothing."""
    resp = await post_event(
        api_client,
        make_event("subscription_canceled", test_org.id),
        secret="whsec_forged",
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
    assert org.status == "active"
    (row,) = await fetch_all(session_maker, WebhookInbox)
    assert row.status == "rejected"


@pytest.mark.asyncio
async def test_missing_signature_header(api_client: AsyncClient, session_maker):
    """No signature header is a rejection, not an HTTP error."""
    resp = await api_client.post(URL, content=b'{"type": "charge_finished"}')
    await drain_inflight(5)

    assert resp.status_code == 200
    (row,) = await fetch_all(session_maker, WebhookInbox)
    assert row.signature is None
    assert row.status == "rejected"


@pytest.mark.asyncio
async def test_duplicate_delivery_acknowledged(api_client: AsyncClient, session_maker, test_org):
    """Redelivering the same event is acknowledged and recorded as a duplicate."""
    payload = make_event("charge_updated", test_org.id, event_id="evt_dup", status="pending")

    first = await post_event(api_client, payload)
    second = await post_event(api_client, payload)

    assert first.status_code == second.status_code == 200
    statuses = sorted(row.status for row in await fetch_all(session_maker, WebhookInbox))
    assert statuses == ["duplicate", "processed"]


@pytest.mark.asyncio
async def test_storage_failure_returns_503(api_client: AsyncClient, test_org):
    """If the delivery cannot be stored the processor is asked to retry."""
    with patch.object(WebhookProcessor, "capture", side_effect=ConnectionError("db down")):
        resp = await post_event(api_client, make_event("charge_finished", test_org.id))

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_oversized_signature_header_is_rejected_not_retried(
    api_client: AsyncClient, session_maker, test_org
):
    """An arbitrarily long signature header is stored and rejected with a 200."""
    raw, _ = sign(make_event("subscription_canceled", test_org.id))
    forged = "sha256=" + "f" * 4096

    resp = await api_client.post(URL, content=raw, headers={SIGNATURE_HEADER: forged})
    await drain_inflight(5)

    assert resp.status_code == 200
    (row,) = await fetch_all(session_maker, WebhookInbox)
    assert row.status == "rejected"
    assert row.signature == forged
    signature_type = WebhookInbox.__table__.c.signature.type
    assert isinstance(signature_type, Text)
    assert signature_type.length is None


@pytest.mark.asyncio
async def test_slow_processing_is_acknowledged_within_deadline(
    api_client: AsyncClient, session_maker, test_org, test_subscription, monkeypatch
):
    """The ack goes out at the deadline; processing finishes in the background."""
    original = WebhookProcessor.process_inbox

    async def slow_process_inbox(self, inbox_id):
        await asyncio.sleep(1.0)
        return await original(self, inbox_id)

    monkeypatch.setattr(settings, "webhook_ack_timeout_seconds", 0.2)
    monkeypatch.setattr(WebhookProcessor, "process_inbox", slow_process_inbox)
    raw, signature_header = sign(
        make_event("subscription_suspended", test_org.id, subscription_id="sub_test")
    )

    started = time.monotonic()
    resp = await api_client.post(URL, content=raw, headers={SIGNATURE_HEADER: signature_header})
    elapsed = time.monotonic() - started

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert elapsed < 0.9
    (row,) = await fetch_all(session_maker, WebhookInbox)
    assert row.status == "received"

    assert await drain_inflight(5) == 0
    (row,) = await fetch_all(session_maker, WebhookInbox)
    assert row.status == "processed"
    org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
    assert org.status == "suspended"


@pytest.mark.asyncio
async def test_health(api_client: AsyncClient):
    """GET /health is open."""
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}
