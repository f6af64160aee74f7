"""Event type -> handler mapping."""

from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from billing_sync.billing import handlers
from billing_sync.billing.events import KNOWN_EVENT_TYPES, UnknownEvent, WebhookEvent
from billing_sync.billing.handlers import HandlerContext

Handler = Callable[[HandlerContext, Any], Awaitable[None]]

DEFAULT_ROUTES: dict[str, Handler] = {
    "subscription_created": handlers.handle_subscription_created,
    "subscription_payment": handlers.handle_subscription_payment,
    "subscription_failure": handlers.handle_subscription_failure,
    "subscription_suspended": handlers.handle_subscription_suspended,
    "subscription_canceled": handlers.handle_subscription_canceled,
    "charge_updated": handlers.handle_charge_updated,
    "charge_finished": handlers.handle_charge_finished,
    "refund_finished": handlers.handle_refund_finished,
}


class EventRouter:
    """Pure lookup. `resolve` returns None for types with no handler."""

    def __init__(self, routes: Mapping[str, Handler] | None = None):
        self._routes = dict(DEFAULT_ROUTES if routes is None else routes)

    def resolve(self, event: WebhookEvent | UnknownEvent) -> Handler | None:
        if isinstance(event, UnknownEvent):
            return None
        return self._routes.get(event.type)

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._routes)

    @property
    def is_exhaustive(self) -> bool:
        """True if every recognized event type has a handler."""
        return KNOWN_EVENT_TYPES <= self.event_types
