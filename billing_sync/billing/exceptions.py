"""Webhook processing outcomes and the errors that produce them.

None of these ever reach the payment processor: the gateway acknowledges
every captured delivery with 200. They decide what the gateway writes to
the audit log and which status the inbox row ends up in.
"""

from enum import Enum

from billing_sync.models.billing import WebhookInboxStatus


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_PAYLOAD = "malformed_payload"
    DUPLICATE = "duplicate"
    UNKNOWN_EVENT_TYPE = "unknown_event_type"
    MISSING_ORGANIZATION = "missing_organization"
    ERROR = "error"


class WebhookError(Exception):
    """Base class for anything that stops an event from being applied."""

    outcome = WebhookOutcome.ERROR
    inbox_status = WebhookInboxStatus.FAILED

    def __init__(
        self,
        message: str,
        event_id: str | None = None,
        event_type: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.event_id = event_id
        self.event_type = event_type


class SignatureInvalid(WebhookError):
    """HMAC missing or mismatched. Nothing in the body is trusted."""

    outcome = WebhookOutcome.SIGNATURE_INVALID
    inbox_status = WebhookInboxStatus.REJECTED


class MalformedPayload(WebhookError):
    """Authentic body that is not a decodable event envelope."""

    outcome = WebhookOutcome.MALFORMED_PAYLOAD
    inbox_status = WebhookInboxStatus.REJECTED


class DuplicateEvent(WebhookError):
    """Event ID already claimed; no handler runs."""

    outcome = WebhookOutcome.DUPLICATE
    inbox_status = WebhookInboxStatus.DUPLICATE


class UnknownEventType(WebhookError):
    outcome = WebhookOutcome.UNKNOWN_EVENT_TYPE
    inbox_status = WebhookInboxStatus.IGNORED


class MissingOrganizationMetadata(WebhookError):
    """Event cannot be attributed to an existing organization."""

    outcome = WebhookOutcome.MISSING_ORGANIZATION
    inbox_status = WebhookInboxStatus.IGNORED


class DownstreamPersistenceFailure(WebhookError):
    """
    A database write failed mid-handler.

    The unit of work (idempotency claim included) is rolled back, so a
    replay of the same event applies it from scratch.
    """


class NotificationDispatchFailure(Exception):
    """Raised by a notification transport. Always caught by the dispatcher."""
