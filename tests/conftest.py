"""Root conftest: test infrastructure for all billing tests.

Provides:
- A throwaway SQLite database per test (file-backed, one connection per
  session, so concurrent units of work really are separate transactions)
- Organization / subscription / invoice fixtures created via domain operations
- A recording email transport and a fully wired WebhookProcessor
- API client with dependency overrides
- Autouse mock for Postmark so nothing is ever sent
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

import billing_sync.models  # noqa: F401
from billing_sync.domain.invoice_operations import invoice_ops
from billing_sync.domain.organization_operations import organization_ops
from billing_sync.domain.subscription_operations import subscription_ops
from billing_sync.models.base import utcnow
from billing_sync.models.organization import OrganizationStatus
from billing_sync.models.subscription import SubscriptionStatus
from billing_sync.services.email.postmark import PostmarkService

from tests.helpers.transport import RecordingTransport
from tests.helpers.webhooks import TEST_WEBHOOK_SECRET

# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database with every table, disposed after the test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# ─────────────────────────────────────────────────────────────────────────────
# Domain entities
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def test_org(session_maker):
    """An active organization with a billing contact."""
    async with session_maker() as db:
        org = await organization_ops.create(
            db,
            name=f"[TEST] Org {uuid.uuid4().hex[:8]}",
            billing_contact_email="billing@example.com",
            status=OrganizationStatus.ACTIVE.value,
        )
        await db.commit()
    return org


@pytest.fixture
async def test_subscription(session_maker, test_org):
    """Active subscription for test_org, known to the processor as `sub_test`."""
    async with session_maker() as db:
        sub = await subscription_ops.create(
            db,
            organization_id=test_org.id,
            status=SubscriptionStatus.ACTIVE.value,
            processor_subscription_id="sub_test",
            plan_id="plan_standard",
            total_amount=Decimal("9800"),
        )
        await db.commit()
    return sub


@pytest.fixture
async def test_invoice(session_maker, test_org, test_subscription):
    """Open invoice for the current period of test_subscription."""
    now = utcnow()
    async with session_maker() as db:
        invoice = await invoice_ops.create(
            db,
            organization_id=test_org.id,
            subscription_id=test_subscription.id,
            invoice_number=f"INV-{uuid.uuid4().hex[:8].upper()}",
            amount=Decimal("9800"),
            billing_period_start=now - timedelta(days=30),
            billing_period_end=now,
            due_date=now + timedelta(days=7),
        )
        await db.commit()
    return invoice


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def processor(session_maker, transport):
    from billing_sync.billing.processor import WebhookProcessor

    return WebhookProcessor.build(session_maker, TEST_WEBHOOK_SECRET, transport)


# ─────────────────────────────────────────────────────────────────────────────
# API Client
# ─────────────────────────────────────────────────────────────────────────────

TEST_ADMIN_SECRET = "admin-secret-for-tests"
TEST_CRON_SECRET = "cron-secret-for-tests"


@pytest.fixture
async def api_client(session_maker, transport, monkeypatch):
    """HTTP client wired to the test database and the recording transport.

    Overrides: get_session_maker, get_email_transport. Shared secrets are
    set on the live settings object.
    """
    from billing_sync.api.deps import get_email_transport
    from billing_sync.billing.gateway import drain_inflight
    from billing_sync.config import settings
    from billing_sync.core.database import get_session_maker
    from billing_sync.main import app

    monkeypatch.setattr(settings, "payment_webhook_secret", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "admin_api_secret", TEST_ADMIN_SECRET)
    monkeypatch.setattr(settings, "cron_secret", TEST_CRON_SECRET)

    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_email_transport] = lambda: transport

    asgi_transport = ASGITransport(app=app)
    async with AsyncClient(transport=asgi_transport, base_url="http://test") as client:
        yield client

    # Let background webhook tasks finish before the database goes away
    await drain_inflight(5)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Secret": TEST_ADMIN_SECRET}


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": TEST_CRON_SECRET}


# ─────────────────────────────────────────────────────────────────────────────
# External Service Mocks
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_external_services():
    """SAFETY: Postmark is never called for real from the test suite."""
    with patch.object(PostmarkService, "send", new_callable=AsyncMock) as mock_send:
        yield {"postmark": mock_send}
