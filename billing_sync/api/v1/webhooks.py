"""Inbound payment processor webhooks.

No user authentication: authenticity is established by the HMAC signature
over the raw body, checked by the processor after the delivery is stored.
"""

import logging

from fastapi import APIRouter, Depends, Request

from billing_sync.api.deps import get_webhook_gateway
from billing_sync.billing.gateway import WebhookGateway
from billing_sync.billing.signature import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post("/payment")
async def receive_payment_webhook(
    request: Request,
    gateway: WebhookGateway = Depends(get_webhook_gateway),
) -> dict[str, bool]:
    """
    Receive a payment processor event.

    Always answers 200 {"received": true} once the delivery is stored,
    whatever the processing outcome, so the processor does not retry
    events that were rejected on purpose. Answers 503 only when the
    delivery could not be stored.
    """
    payload = await request.body()
    sig_header = request.headers.get(SIGNATURE_HEADER)
    return await gateway.receive(payload, sig_header)
