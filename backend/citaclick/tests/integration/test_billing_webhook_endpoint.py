"""
Integration tests for POST /api/webhooks/billing.

Tests cover:
- Signature verification before any processing
- Response codes that drive provider redelivery
- End-to-end state change from a paid invoice
"""

import time
from dataclasses import replace
from unittest.mock import patch

import pytest

from citaclick.integrations.billing.webhook_signature import SIGNATURE_HEADER, compute_signature
from citaclick.models.subscription import SubscriptionStatus
from citaclick.models.webhook_event import WebhookEvent, WebhookOutcome
from citaclick.services.billing_webhook_handler import EVENT_INVOICE_PAID
from citaclick.tests.helpers.factories import (
    TEST_WEBHOOK_SECRET,
    auth_headers,
    days,
    make_negocio,
    make_subscription,
    provider_event,
    signed_body,
)

WEBHOOK_PATH = "/api/webhooks/billing"


@pytest.fixture
def past_due(db_session, clock):
    now = clock()
    negocio = make_negocio(db_session, now)
    return make_subscription(db_session, negocio, SubscriptionStatus.PAST_DUE, now - days(30), now)


def _paid_event(event_id, clock):
    return provider_event(
        event_id,
        EVENT_INVOICE_PAID,
        {"id": f"in_{event_id}", "object": "invoice", "subscription": "sub_local_1"},
        clock(),
    )


def _post(client, body, header):
    return client.post(
        WEBHOOK_PATH,
        content=body,
        headers={SIGNATURE_HEADER: header, "Content-Type": "application/json"},
    )


class TestSignatureVerification:

    def test_missing_signature(self, client, clock):
        response = client.post(WEBHOOK_PATH, json=_paid_event("evt_1", clock))

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_SIGNATURE"

    def test_wrong_secret(self, client, clock):
        body, header = signed_body(_paid_event("evt_1", clock), secret="whsec_other")

        assert _post(client, body, header).status_code == 400

    def test_replayed_old_signature(self, client, clock):
        body, header = signed_body(_paid_event("evt_1", clock), timestamp=1_600_000_000)

        assert _post(client, body, header).status_code == 400

    def test_secret_not_configured(self, client, app, settings, clock):
        app.state.billing_settings = replace(settings, webhook_secret="")
        body, header = signed_body(_paid_event("evt_1", clock))

        response = _post(client, body, header)

        assert response.status_code == 503
        assert response.json()["error_code"] == "WEBHOOK_NOT_CONFIGURED"

    def test_no_bearer_token_needed(self, client, past_due, clock):
        body, header = signed_body(_paid_event("evt_1", clock))

        assert _post(client, body, header).status_code == 200


class TestWebhookProcessing:

    def test_paid_invoice_restores_access(self, client, past_due, clock):
        headers = auth_headers(past_due.tenant_id)
        assert client.get("/api/planes", headers=headers).status_code == 402

        body, header = signed_body(_paid_event("evt_2", clock))
        response = _post(client, body, header)

        assert response.status_code == 200
        assert response.json()["outcome"] == WebhookOutcome.PROCESSED
        assert client.get("/api/planes", headers=headers).status_code == 200

    def test_redelivery_is_acknowledged(self, client, past_due, clock):
        body, header = signed_body(_paid_event("evt_3", clock))
        _post(client, body, header)

        response = _post(client, body, header)

        assert response.status_code == 200
        assert response.json()["message"] == "Duplicate webhook - already processed"

    def test_unknown_subscription_is_acknowledged(self, client, clock):
        event = provider_event(
            "evt_4", EVENT_INVOICE_PAID, {"id": "in_4", "subscription": "sub_ghost"}, clock()
        )
        body, header = signed_body(event)

        response = _post(client, body, header)

        assert response.status_code == 200
        assert response.json()["outcome"] == WebhookOutcome.UNRESOLVED

    def test_unhandled_type(self, client, clock):
        body, header = signed_body(provider_event("evt_5", "charge.refunded", {"id": "ch_1"}, clock()))

        response = _post(client, body, header)

        assert response.status_code == 200
        assert response.json()["outcome"] == WebhookOutcome.IGNORED

    def test_invalid_json(self, client):
        body = b"{not json"
        timestamp = int(time.time())
        header = f"t={timestamp},v1={compute_signature(body, TEST_WEBHOOK_SECRET, timestamp)}"

        response = _post(client, body, header)

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAYLOAD"

    def test_event_without_type(self, client):
        body, header = signed_body({"id": "evt_6"})

        response = _post(client, body, header)

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAYLOAD"

    def test_processing_failure_asks_for_redelivery(self, client, past_due, clock):
        body, header = signed_body(_paid_event("evt_7", clock))

        with patch(
            "citaclick.services.lifecycle_engine.SubscriptionLifecycleEngine._sync_negocio_flags",
            side_effect=RuntimeError("boom"),
        ):
            response = _post(client, body, header)

        assert response.status_code == 500
        assert response.json()["outcome"] == WebhookOutcome.FAILED

        retried = _post(client, body, header)
        assert retried.json()["outcome"] == WebhookOutcome.PROCESSED

    def test_malformed_timestamp_is_recorded(self, client, past_due, clock, db_session):
        event = _paid_event("evt_8", clock)
        event["created"] = "abc"
        body, header = signed_body(event)

        response = _post(client, body, header)

        assert response.status_code == 500
        assert response.json()["outcome"] == WebhookOutcome.FAILED
        row = db_session.query(WebhookEvent).filter(WebhookEvent.provider_event_id == "evt_8").one()
        assert row.outcome == WebhookOutcome.FAILED
