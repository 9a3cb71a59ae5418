"""Billing provider webhook endpoint.

The endpoint reads the raw request body itself: signature verification
needs the exact bytes the provider signed.  It bypasses bearer-token
authentication and authenticates by signature instead.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from billing_api.dependencies import (
    BillingClientDep,
    LocksDep,
    QueueDep,
    SessionFactoryDep,
    SettingsDep,
)
from billing_api.schemas import WebhookAck
from billing_api.services.event_dispatcher import EventDispatcher
from billing_api.services.webhook_ingestor import SIGNATURE_HEADER, WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    client: BillingClientDep,
    locks: LocksDep,
    queue: QueueDep,
    session_factory: SessionFactoryDep,
) -> WebhookAck:
    """Verify, deduplicate and apply one provider event.

    A bad signature is rejected with 400 before any state is touched.
    Every verified event is acknowledged with 200, including events whose
    handler failed, so the provider does not redeliver in a storm.
    """
    payload = await request.body()
    ingestor = WebhookIngestor(settings.stripe_webhook_secret.get_secret_value())
    event = ingestor.verify(payload, request.headers.get(SIGNATURE_HEADER))

    dispatcher = EventDispatcher(session_factory, client, locks, queue)
    result = await dispatcher.dispatch(event)
    logger.info("Webhook %s (%s) -> %s", result.event_id, result.event_type, result.outcome)
    return WebhookAck(event_id=result.event_id, event_type=result.event_type, outcome=result.outcome)
