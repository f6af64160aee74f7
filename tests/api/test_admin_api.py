"""Admin API endpoint tests."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient

from billing_sync.domain import failure_count_ops, organization_ops
from billing_sync.models.audit_log import AuditLogEntry
from billing_sync.models.invoice import Invoice
from billing_sync.models.organization import Organization

from tests.helpers.db import fetch_all, fetch_one


@pytest.fixture
async def suspended_org(session_maker):
    async with session_maker() as db:
        org = await organization_ops.create(
            db, "Suspended Co", "ops@suspended.example", status="suspended"
        )
        await failure_count_ops.increment(db, org.id)
        await failure_count_ops.increment(db, org.id)
        await failure_count_ops.increment(db, org.id)
        await db.commit()
    return org


# ─────────────────────────────────────────────────────────────────────────────
# Auth
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_admin_secret(api_client: AsyncClient):
    """Admin endpoints return 403 without the admin secret."""
    resp = await api_client.get("/api/v1/admin/audit-logs")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_cron_secret_is_not_admin(api_client: AsyncClient, cron_headers):
    """The cron secret does not open admin endpoints."""
    resp = await api_client.get(
        "/api/v1/admin/audit-logs", headers={"X-Admin-Secret": cron_headers["X-Cron-Secret"]}
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_secret_unconfigured(api_client: AsyncClient, admin_headers, monkeypatch):
    """With no admin secret configured the endpoints are unavailable."""
    from billing_sync.config import settings

    monkeypatch.setattr(settings, "admin_api_secret", "")
    resp = await api_client.get("/api/v1/admin/audit-logs", headers=admin_headers)
    assert resp.status_code == 503


# ─────────────────────────────────────────────────────────────────────────────
# Organization status
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_batch_status_update(
    api_client: AsyncClient, admin_headers, session_maker, transport, test_org, suspended_org
):
    """PUT /api/v1/admin/organizations/status reports per-org changes."""
    resp = await api_client.put(
        "/api/v1/admin/organizations/status",
        headers=admin_headers,
        json={
            "organization_ids": [str(test_org.id), str(suspended_org.id)],
            "status": "active",
            "reason": "manual review",
            "notify_owners": True,
        },
    )

    assert resp.status_code == 200
    results = {item["organization_id"]: item for item in resp.json()}
    assert results[str(test_org.id)]["status_changed"] is False
    assert results[str(suspended_org.id)] == {
        "organization_id": str(suspended_org.id),
        "previous_status": "suspended",
        "status": "active",
        "status_changed": True,
    }

    org = await fetch_one(session_maker, Organization, Organization.id == suspended_org.id)
    assert org.status == "active"
    assert org.status_reason == "manual review"
    async with session_maker() as db:
        assert await failure_count_ops.get(db, suspended_org.id) == 0
    assert transport.tags == ["status_changed"]
    assert transport.sent[0]["to"] == "ops@suspended.example"

    (entry,) = await fetch_all(
        session_maker, AuditLogEntry, AuditLogEntry.action == "organization_status_change"
    )
    assert entry.payload["trigger"] == "admin"


@pytest.mark.asyncio
async def test_status_update_without_notification(
    api_client: AsyncClient, admin_headers, transport, test_org
):
    """notify_owners defaults to false."""
    resp = await api_client.put(
        "/api/v1/admin/organizations/status",
        headers=admin_headers,
        json={"organization_ids": [str(test_org.id)], "status": "suspended"},
    )
    assert resp.status_code == 200
    assert resp.json()[0]["status_changed"] is True
    assert transport.sent == []


@pytest.mark.asyncio
async def test_status_update_invalid_status(api_client: AsyncClient, admin_headers, test_org):
    resp = await api_client.put(
        "/api/v1/admin/organizations/status",
        headers=admin_headers,
        json={"organization_ids": [str(test_org.id)], "status": "frozen"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_status_update_empty_batch(api_client: AsyncClient, admin_headers):
    resp = await api_client.put(
        "/api/v1/admin/organizations/status",
        headers=admin_headers,
        json={"organization_ids": [], "status": "active"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_status_update_unknown_org_changes_nothing(
    api_client: AsyncClient, admin_headers, session_maker, test_org
):
    """One unknown id fails the whole batch before anything is written."""
    missing = uuid.uuid4()
    resp = await api_client.put(
        "/api/v1/admin/organizations/status",
        headers=admin_headers,
        json={"organization_ids": [str(test_org.id), str(missing)], "status": "inactive"},
    )

    assert resp.status_code == 404
    assert str(missing) in resp.json()["detail"]
    org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
    assert org.status == "active"


# ─────────────────────────────────────────────────────────────────────────────
# Trials
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_extend_trial(api_client: AsyncClient, admin_headers, transport, test_org):
    """POST /api/v1/admin/organizations/extend-trial pushes the trial end back."""
    resp = await api_client.post(
        "/api/v1/admin/organizations/extend-trial",
        headers=admin_headers,
        json={"organization_ids": [str(test_org.id)], "days": 14, "notify_owners": True},
    )

    assert resp.status_code == 200
    (item,) = resp.json()
    assert item["organization_id"] == str(test_org.id)
    assert item["trial_ends_at"]
    assert transport.tags == ["trial_extended"]
    assert "14 days" in transport.sent[0]["text_body"]


@pytest.mark.asyncio
async def test_extend_trial_twice_accumulates(
    api_client: AsyncClient, admin_headers, session_maker, test_org
):
    for _ in range(2):
        resp = await api_client.post(
            "/api/v1/admin/organizations/extend-trial",
            headers=admin_headers,
            json={"organization_ids": [str(test_org.id)], "days": 10},
        )
        assert resp.status_code == 200

    entries = await fetch_all(
        session_maker, AuditLogEntry, AuditLogEntry.action == "trial_extended"
    )
    assert len(entries) == 2
    org = await fetch_one(session_maker, Organization, Organization.id == test_org.id)
    assert org.trial_ends_at is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [0, -3, 366])
async def test_extend_trial_rejects_out_of_range(
    api_client: AsyncClient, admin_headers, test_org, days
):
    resp = await api_client.post(
        "/api/v1/admin/organizations/extend-trial",
        headers=admin_headers,
        json={"organization_ids": [str(test_org.id)], "days": days},
    )
    assert resp.status_code == 400


# ─────────────────────────────────────────────────────────────────────────────
# Invoices
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_void_invoice(api_client: AsyncClient, admin_headers, session_maker, test_invoice):
    """POST /api/v1/admin/invoices/{id}/void voids an open invoice."""
    resp = await api_client.post(
        f"/api/v1/admin/invoices/{test_invoice.id}/void", headers=admin_headers
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "id": str(test_invoice.id),
        "invoice_number": test_invoice.invoice_number,
        "status": "void",
    }
    invoice = await fetch_one(session_maker, Invoice, Invoice.id == test_invoice.id)
    assert invoice.status == "void"
    (entry,) = await fetch_all(
        session_maker, AuditLogEntry, AuditLogEntry.action == "invoice_voided"
    )
    assert entry.payload["previous_status"] == "open"


@pytest.mark.asyncio
async def test_void_paid_invoice_rejected(
    api_client: AsyncClient, admin_headers, session_maker, test_invoice
):
    async with session_maker() as db:
        invoice = await db.get(Invoice, test_invoice.id)
        invoice.status = "paid"
        await db.commit()

    resp = await api_client.post(
        f"/api/v1/admin/invoices/{test_invoice.id}/void", headers=admin_headers
    )

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invoice is already paid"


@pytest.mark.asyncio
async def test_void_unknown_invoice(api_client: AsyncClient, admin_headers):
    resp = await api_client.post(f"/api/v1/admin/invoices/{uuid.uuid4()}/void", headers=admin_headers)
    assert resp.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Audit log
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_audit_log_search(api_client: AsyncClient, admin_headers, session_maker, test_org):
    """GET /api/v1/admin/audit-logs filters and paginates, newest first."""
    from billing_sync.domain import audit_log_ops
    from billing_sync.models.base import utcnow

    now = utcnow()
    async with session_maker() as db:
        for i in range(3):
            entry = audit_log_ops.add(db, "payment", "charge_success", {"n": i}, test_org.id)
            entry.timestamp = now - timedelta(minutes=3 - i)
        audit_log_ops.add(db, "subscription", "subscription_created", {}, test_org.id)
        await db.commit()

    resp = await api_client.get(
        "/api/v1/admin/audit-logs",
        headers=admin_headers,
        params={"category": "payment", "organization_id": str(test_org.id), "limit": 2},
    )

    assert resp.status_code == 200
    page = resp.json()
    assert page["total"] == 3
    assert [item["payload"]["n"] for item in page["items"]] == [2, 1]
    assert all(item["organization_id"] == str(test_org.id) for item in page["items"])


@pytest.mark.asyncio
async def test_audit_log_limit_bounds(api_client: AsyncClient, admin_headers):
    resp = await api_client.get(
        "/api/v1/admin/audit-logs", headers=admin_headers, params={"limit": 501}
    )
    assert resp.status_code == 422
