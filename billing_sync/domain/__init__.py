from billing_sync.domain.audit_log_operations import audit_log_ops
from billing_sync.domain.failure_count_operations import failure_count_ops
from billing_sync.domain.invoice_operations import invoice_ops
from billing_sync.domain.notification_log_operations import notification_log_ops
from billing_sync.domain.organization_operations import organization_ops
from billing_sync.domain.processed_event_operations import processed_event_ops
from billing_sync.domain.subscription_operations import subscription_ops
from billing_sync.domain.webhook_inbox_operations import webhook_inbox_ops

__all__ = [
    "audit_log_ops",
    "failure_count_ops",
    "invoice_ops",
    "notification_log_ops",
    "organization_ops",
    "processed_event_ops",
    "subscription_ops",
    "webhook_inbox_ops",
]
