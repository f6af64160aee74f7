"""Typed webhook events.

Every recognized event type is its own model, and the set of them is a
closed union discriminated on ``type``. Anything else decodes to
``UnknownEvent``, the single fallback case.
"""

import json
import uuid as uuid_pkg
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from billing_sync.billing.exceptions import MalformedPayload


class EventMetadata(BaseModel):
    """Merchant metadata attached to the processor object at creation."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    organization_id: str | None = None
    plan_id: str | None = None
    invoice_id: str | None = None
    subscription_id: str | None = None
    price_id: str | None = None


class ProcessorSubscription(BaseModel):
    """Nested subscription details sent with `subscription_created`."""

    model_config = ConfigDict(extra="allow")

    next_payment: datetime | None = None


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    subscription_id: str | None = None
    charge_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    status: str | None = None
    error: dict[str, Any] | None = None
    reason: str | None = None
    subscription: ProcessorSubscription | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, v: Any) -> Any:
        return {} if v is None else v


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    type: str
    id: str | None = None
    data: EventData

    @property
    def event_id(self) -> str:
        """Processor event id, or a deterministic one derived from the payload."""
        return derive_event_id(self.id, self.type, self.data.id, self.data.status)

    @property
    def organization_reference(self) -> str | None:
        return self.data.metadata.organization_id

    @property
    def organization_id(self) -> uuid_pkg.UUID | None:
        """Organization UUID from metadata, or None if absent or not a UUID."""
        reference = self.organization_reference
        if not reference:
            return None
        try:
            return uuid_pkg.UUID(reference)
        except ValueError:
            return None

    @property
    def invoice_reference(self) -> str | None:
        return self.data.metadata.invoice_id

    @property
    def processor_subscription_id(self) -> str | None:
        return self.data.subscription_id or self.data.metadata.subscription_id

    @property
    def is_successful(self) -> bool:
        return self.data.status == "successful"


class SubscriptionCreated(WebhookEvent):
    type: Literal["subscription_created"]

    @property
    def processor_subscription_id(self) -> str | None:
        # The event payload is the subscription itself
        return self.data.id


class SubscriptionPayment(WebhookEvent):
    type: Literal["subscription_payment"]


class SubscriptionFailure(WebhookEvent):
    type: Literal["subscription_failure"]


class SubscriptionSuspended(WebhookEvent):
    type: Literal["subscription_suspended"]


class SubscriptionCanceled(WebhookEvent):
    type: Literal["subscription_canceled"]


class ChargeUpdated(WebhookEvent):
    type: Literal["charge_updated"]


class ChargeFinished(WebhookEvent):
    type: Literal["charge_finished"]


class RefundFinished(WebhookEvent):
    type: Literal["refund_finished"]


class UnknownEvent(BaseModel):
    """Any event whose type this service does not handle."""

    type: str
    event_id: str


PaymentEvent = Annotated[
    SubscriptionCreated
    | SubscriptionPayment
    | SubscriptionFailure
    | SubscriptionSuspended
    | SubscriptionCanceled
    | ChargeUpdated
    | ChargeFinished
    | RefundFinished,
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(PaymentEvent)

KNOWN_EVENT_TYPES = frozenset(
    {
        "subscription_created",
        "subscription_payment",
        "subscription_failure",
        "subscription_suspended",
        "subscription_canceled",
        "charge_updated",
        "charge_finished",
        "refund_finished",
    }
)


def derive_event_id(
    event_id: str | None,
    event_type: str,
    data_id: str | None,
    data_status: str | None,
) -> str:
    """
    Idempotency key for an event.

    The processor's own event id when it sends one. Otherwise the object id
    plus its reported status, so the same state change redelivered maps to
    the same key while a later change of the same object does not.
    """
    if event_id:
        return event_id
    parts = [event_type, data_id or ""]
    if data_status:
        parts.append(data_status)
    return ":".join(parts)


def parse_event(raw_body: bytes) -> WebhookEvent | UnknownEvent:
    """
    Decode a verified request body into a typed event.

    Raises MalformedPayload if the body is not a JSON object with a string
    `type`, or if a recognized type is missing required fields.
    """
    try:
        envelope = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload(f"Body is not valid JSON: {e}") from e

    if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
        raise MalformedPayload("Body has no event type")

    event_type = envelope["type"]
    if event_type not in KNOWN_EVENT_TYPES:
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
        top_id = envelope.get("id")
        return UnknownEvent(
            type=event_type,
            event_id=derive_event_id(
                top_id if isinstance(top_id, str) else None,
                event_type,
                str(data["id"]) if data.get("id") is not None else None,
                data.get("status") if isinstance(data.get("status"), str) else None,
            ),
        )

    try:
        return _event_adapter.validate_python(envelope)
    except PydanticValidationError as e:
        raise MalformedPayload(
            f"Invalid {event_type} payload: {e.error_count()} error(s)",
            event_type=event_type,
        ) from e
