"""Webhook authentication and parsing.

The ingestor accepts the raw request body exactly as received together with
the ``Stripe-Signature`` header.  Anything that fails verification is
rejected with :class:`WebhookVerificationError` before any state is read or
written.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from billing_api.services.errors import WebhookVerificationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


class WebhookEvent(BaseModel):
    """Typed envelope of a verified provider event."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: datetime
    data: dict[str, Any]

    @property
    def object(self) -> dict[str, Any]:
        """The resource the event is about (``data.object``)."""
        return self.data.get("object") or {}


class WebhookIngestor:
    """Verify signatures and parse provider webhook payloads.

    Parameters
    ----------
    secret:
        The endpoint's signing secret.  An empty secret rejects every
        delivery.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def verify(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Return the parsed event or raise :class:`WebhookVerificationError`."""
        if not signature:
            logger.warning("Webhook rejected: missing signature header")
            raise WebhookVerificationError("Missing Stripe signature")
        if not self._secret:
            logger.warning("Webhook rejected: no signing secret configured")
            raise WebhookVerificationError("Webhook signing secret is not configured")

        import stripe

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self._secret,
            )
        except ValueError as exc:
            logger.warning("Webhook rejected: invalid payload: %s", exc)
            raise WebhookVerificationError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook rejected: signature verification failed: %s", exc)
            raise WebhookVerificationError("Signature verification failed") from exc

        # Parse the verified bytes straight into the typed envelope.
        try:
            parsed = WebhookEvent.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Webhook rejected: malformed event envelope: %s", exc)
            raise WebhookVerificationError("Malformed event envelope") from exc

        logger.info("Verified webhook event %s (%s)", parsed.id, parsed.type)
        return parsed
