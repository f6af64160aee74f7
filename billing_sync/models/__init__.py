from billing_sync.models.audit_log import AuditCategory, AuditLogEntry
from billing_sync.models.billing import (
    PaymentFailureCount,
    ProcessedEvent,
    WebhookInbox,
    WebhookInboxStatus,
)
from billing_sync.models.invoice import Invoice, InvoiceStatus
from billing_sync.models.notification_log import (
    NotificationKind,
    NotificationLog,
    NotificationStatus,
)
from billing_sync.models.organization import Organization, OrganizationStatus
from billing_sync.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "AuditCategory",
    "AuditLogEntry",
    "Invoice",
    "InvoiceStatus",
    "NotificationKind",
    "NotificationLog",
    "NotificationStatus",
    "Organization",
    "OrganizationStatus",
    "PaymentFailureCount",
    "ProcessedEvent",
    "Subscription",
    "SubscriptionStatus",
    "WebhookInbox",
    "WebhookInboxStatus",
]
