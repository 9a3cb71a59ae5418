"""Tests for webhook signature verification and envelope parsing."""

from __future__ import annotations

import json
import time

import pytest
from conftest import WEBHOOK_SECRET, make_event, sign_payload

from billing_api.services.errors import WebhookVerificationError
from billing_api.services.webhook_ingestor import WebhookIngestor


def _payload(**overrides) -> bytes:
    event = make_event("customer.subscription.updated", {"id": "sub_1", "status": "active"})
    event.update(overrides)
    return json.dumps(event).encode()


@pytest.fixture()
def ingestor() -> WebhookIngestor:
    return WebhookIngestor(WEBHOOK_SECRET)


class TestWebhookIngestor:
    def test_valid_signature_parses_event(self, ingestor: WebhookIngestor) -> None:
        payload = _payload(id="evt_ok")
        event = ingestor.verify(payload, sign_payload(payload))
        assert event.id == "evt_ok"
        assert event.type == "customer.subscription.updated"
        assert event.object == {"id": "sub_1", "status": "active"}
        assert event.created.tzinfo is not None

    def test_missing_signature(self, ingestor: WebhookIngestor) -> None:
        with pytest.raises(WebhookVerificationError, match="Missing"):
            ingestor.verify(_payload(), None)

    def test_unconfigured_secret_rejects(self) -> None:
        payload = _payload()
        with pytest.raises(WebhookVerificationError, match="not configured"):
            WebhookIngestor("").verify(payload, sign_payload(payload))

    def test_tampered_body_rejected(self, ingestor: WebhookIngestor) -> None:
        payload = _payload()
        header = sign_payload(payload)
        with pytest.raises(WebhookVerificationError, match="Signature"):
            ingestor.verify(payload.replace(b"active", b"canceled"), header)

    def test_wrong_secret_rejected(self, ingestor: WebhookIngestor) -> None:
        payload = _payload()
        with pytest.raises(WebhookVerificationError):
            ingestor.verify(payload, sign_payload(payload, secret="whsec_other"))

    def test_stale_timestamp_rejected(self, ingestor: WebhookIngestor) -> None:
        payload = _payload()
        header = sign_payload(payload, timestamp=int(time.time()) - 3600)
        with pytest.raises(WebhookVerificationError):
            ingestor.verify(payload, header)

    def test_invalid_json_rejected(self, ingestor: WebhookIngestor) -> None:
        payload = b"not json"
        with pytest.raises(WebhookVerificationError):
            ingestor.verify(payload, sign_payload(payload))

    def test_malformed_envelope_rejected(self, ingestor: WebhookIngestor) -> None:
        payload = json.dumps({"type": "customer.subscription.updated", "data": {}}).encode()
        with pytest.raises(WebhookVerificationError, match="Malformed"):
            ingestor.verify(payload, sign_payload(payload))
