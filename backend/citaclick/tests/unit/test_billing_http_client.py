"""
Unit tests for HostedBillingClient.

Tests cover:
- Retry with backoff for 429/5xx and network errors
- No retry for other 4xx
- Idempotency-Key reuse across retries
- Secret redaction in errors
- Payload parsing and status mapping
"""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from citaclick.integrations.billing.http_client import (
    HostedBillingClient,
    RetryConfig,
    parse_invoice,
    parse_subscription,
)
from citaclick.integrations.billing.provider import (
    PROVIDER_STATUS_MAP,
    AlreadyExpiredError,
    BillingProviderError,
    CustomerRef,
    ProviderSubscriptionStatus,
    map_provider_status,
    redact,
)
from citaclick.models.subscription import SubscriptionStatus

API_KEY = "sk_test_51Hsecretkey"
NOW = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)


def _subscription_body(status="active", period_end=NOW + timedelta(days=30), **extra):
    body = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "current_period_start": int(NOW.timestamp()),
        "current_period_end": int(period_end.timestamp()),
        "cancel_at_period_end": False,
        "items": {"data": [{"id": "si_1", "price": {"id": "price_basico", "recurring": {"interval": "month"}}}]},
        "latest_invoice": {"id": "in_1", "object": "invoice"},
    }
    body.update(extra)
    return body


class Recorder:
    """MockTransport handler replaying queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(recorder, max_retries=3, sleeps=None):
    return HostedBillingClient(
        api_key=API_KEY,
        base_url="https://billing.test/v1",
        retry_config=RetryConfig(max_retries=max_retries, initial_delay=0.5),
        transport=httpx.MockTransport(recorder),
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
        clock=lambda: NOW,
    )


class TestRetryConfig:

    def test_defaults(self):
        config = RetryConfig()

        assert config.max_retries == 3
        assert {429, 500, 502, 503, 504} <= set(config.retryable_status_codes)

    def test_exponential_delay_is_capped(self):
        config = RetryConfig(initial_delay=1.0, max_delay=5.0)

        assert [config.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_retry_after_wins(self):
        assert RetryConfig().delay_for(0, retry_after=7.0) == 7.0


class TestRetries:
    """Tests for transient failure handling."""

    def test_retries_503_then_succeeds(self):
        sleeps = []
        recorder = Recorder(
            httpx.Response(503, json={"error": {"type": "api_error", "message": "down"}}),
            httpx.Response(503),
            httpx.Response(200, json=_subscription_body()),
        )

        snapshot = _client(recorder, sleeps=sleeps).get_subscription("sub_123")

        assert snapshot.status == SubscriptionStatus.ACTIVE
        assert len(recorder.requests) == 3
        assert sleeps == [0.5, 1.0]

    def test_rate_limit_honours_retry_after(self):
        sleeps = []
        recorder = Recorder(
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json=_subscription_body()),
        )

        _client(recorder, sleeps=sleeps).get_subscription("sub_123")

        assert sleeps == [2.0]

    def test_network_error_is_retried(self):
        recorder = Recorder(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json=_subscription_body()),
        )

        _client(recorder).get_subscription("sub_123")

        assert len(recorder.requests) == 2

    def test_gives_up_after_max_retries(self):
        recorder = Recorder(*[httpx.Response(500) for _ in range(3)])

        with pytest.raises(BillingProviderError) as exc_info:
            _client(recorder, max_retries=2).get_subscription("sub_123")

        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable
        assert len(recorder.requests) == 3

    def test_client_error_is_not_retried(self):
        recorder = Recorder(
            httpx.Response(400, json={"error": {"code": "parameter_invalid", "message": "Bad price"}}),
        )

        with pytest.raises(BillingProviderError) as exc_info:
            _client(recorder).get_subscription("sub_123")

        assert exc_info.value.code == "parameter_invalid"
        assert not exc_info.value.retryable
        assert len(recorder.requests) == 1

    def test_idempotency_key_is_reused_across_retries(self):
        recorder = Recorder(
            httpx.Response(502),
            httpx.Response(200, json=_subscription_body()),
        )

        _client(recorder).create_subscription(
            CustomerRef(id="cus_123"), "price_basico", idempotency_key="subscription-neg-1-price_basico-first"
        )

        keys = [request.headers["Idempotency-Key"] for request in recorder.requests]
        assert keys == ["subscription-neg-1-price_basico-first"] * 2

    def test_generated_idempotency_key_is_stable_across_retries(self):
        recorder = Recorder(
            httpx.Response(503),
            httpx.Response(200, json=_subscription_body(cancel_at_period_end=True)),
        )

        _client(recorder).cancel_subscription("sub_123", immediate=False)

        keys = {request.headers["Idempotency-Key"] for request in recorder.requests}
        assert len(keys) == 1

    def test_get_requests_carry_no_idempotency_key(self):
        recorder = Recorder(httpx.Response(200, json=_subscription_body()))

        _client(recorder).get_subscription("sub_123")

        assert "Idempotency-Key" not in recorder.requests[0].headers


class TestRedaction:
    """Secrets never reach error messages."""

    def test_api_key_redacted_from_provider_message(self):
        recorder = Recorder(
            httpx.Response(401, json={"error": {"code": "invalid_api_key", "message": f"Invalid API Key: {API_KEY}"}}),
        )

        with pytest.raises(BillingProviderError) as exc_info:
            _client(recorder).get_subscription("sub_123")

        assert API_KEY not in exc_info.value.message
        assert "[REDACTED]" in exc_info.value.message

    def test_redact_known_prefixes(self):
        text = "keys sk_live_abc123 and whsec_xyz789 leaked"
        assert redact(text) == "keys [REDACTED] and [REDACTED] leaked"

    def test_bearer_header(self):
        recorder = Recorder(httpx.Response(200, json=_subscription_body()))

        _client(recorder).get_subscription("sub_123")

        assert recorder.requests[0].headers["Authorization"] == f"Bearer {API_KEY}"

    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="api_key is required"):
            HostedBillingClient(api_key="")


class TestOperations:
    """Tests for request shapes of the provider operations."""

    def test_create_subscription_with_trial_end(self):
        recorder = Recorder(httpx.Response(200, json=_subscription_body(status="trialing")))
        trial_end = NOW + timedelta(days=7)

        snapshot = _client(recorder).create_subscription(
            CustomerRef(id="cus_123"), "price_basico", payment_method_ref="pm_1", trial_end_at=trial_end
        )

        form = parse_qs(recorder.requests[0].content.decode())
        assert form["customer"] == ["cus_123"]
        assert form["items[0][price]"] == ["price_basico"]
        assert form["trial_end"] == [str(int(trial_end.timestamp()))]
        assert form["default_payment_method"] == ["pm_1"]
        assert snapshot.status == SubscriptionStatus.TRIALING

    def test_cancel_immediately_uses_delete(self):
        recorder = Recorder(httpx.Response(200, json=_subscription_body(status="canceled")))

        snapshot = _client(recorder).cancel_subscription("sub_123", immediate=True)

        assert recorder.requests[0].method == "DELETE"
        assert snapshot.status == SubscriptionStatus.CANCELED

    def test_reactivate_after_period_end(self):
        recorder = Recorder(
            httpx.Response(200, json=_subscription_body(period_end=NOW - timedelta(days=1))),
        )

        with pytest.raises(AlreadyExpiredError):
            _client(recorder).reactivate_subscription("sub_123")

        assert len(recorder.requests) == 1

    def test_reactivate_clears_cancellation(self):
        recorder = Recorder(
            httpx.Response(200, json=_subscription_body(cancel_at_period_end=True)),
            httpx.Response(200, json=_subscription_body()),
        )

        snapshot = _client(recorder).reactivate_subscription("sub_123")

        assert parse_qs(recorder.requests[1].content.decode())["cancel_at_period_end"] == ["false"]
        assert snapshot.cancel_at_period_end is False

    def test_plan_change_replaces_the_item(self):
        recorder = Recorder(
            httpx.Response(200, json=_subscription_body()),
            httpx.Response(200, json=_subscription_body()),
        )

        _client(recorder).update_subscription("sub_123", price_id="price_premium")

        form = parse_qs(recorder.requests[1].content.decode())
        assert form["items[0][id]"] == ["si_1"]
        assert form["items[0][price]"] == ["price_premium"]

    def test_upcoming_invoice_missing(self):
        recorder = Recorder(httpx.Response(404, json={"error": {"code": "invoice_upcoming_none"}}))

        assert _client(recorder).get_upcoming_invoice("cus_123") is None

    def test_list_invoices(self):
        invoice = {"id": "in_1", "customer": "cus_123", "subscription": "sub_123", "status": "paid",
                   "amount_paid": 29900, "created": int(NOW.timestamp()),
                   "status_transitions": {"paid_at": int(NOW.timestamp())}}
        recorder = Recorder(httpx.Response(200, json={"data": [invoice]}))

        invoices = _client(recorder).list_customer_invoices("cus_123", limit=5)

        assert recorder.requests[0].url.params["limit"] == "5"
        assert invoices[0].amount_paid == 29900
        assert invoices[0].paid_at == NOW

    def test_get_invoice(self):
        invoice = {"id": "in_7", "customer": "cus_123", "subscription": {"id": "sub_123"},
                   "status": "open", "amount_due": 49900, "created": int(NOW.timestamp())}
        recorder = Recorder(httpx.Response(200, json=invoice))

        snapshot = _client(recorder).get_invoice("in_7")

        assert recorder.requests[0].method == "GET"
        assert recorder.requests[0].url.path == "/v1/invoices/in_7"
        assert snapshot.id == "in_7"
        assert snapshot.status == "open"
        assert snapshot.amount_due == 49900

    def test_get_invoice_not_found(self):
        recorder = Recorder(httpx.Response(404, json={"error": {"code": "resource_missing"}}))

        with pytest.raises(BillingProviderError) as exc_info:
            _client(recorder).get_invoice("in_missing")

        assert exc_info.value.status_code == 404
        assert not exc_info.value.retryable
        assert len(recorder.requests) == 1

    def test_non_json_success(self):
        recorder = Recorder(httpx.Response(200, content=b"<html>"))

        with pytest.raises(BillingProviderError) as exc_info:
            _client(recorder).get_subscription("sub_123")

        assert exc_info.value.code == "invalid_response"


class TestParsing:

    def test_every_provider_status_is_mapped(self):
        assert set(PROVIDER_STATUS_MAP) == set(ProviderSubscriptionStatus)

    @pytest.mark.parametrize("raw,expected", [
        ("unpaid", SubscriptionStatus.PAST_DUE),
        ("incomplete_expired", SubscriptionStatus.CANCELED),
        ("paused", SubscriptionStatus.PAST_DUE),
        ("ACTIVE", SubscriptionStatus.ACTIVE),
    ])
    def test_status_map(self, raw, expected):
        assert map_provider_status(raw) == expected

    def test_unknown_status(self):
        with pytest.raises(BillingProviderError) as exc_info:
            map_provider_status("frozen")
        assert exc_info.value.code == "unknown_status"

    def test_parse_subscription(self):
        body = _subscription_body(
            status="past_due",
            customer={"id": "cus_999"},
            items={"data": [{"id": "si_1", "price": {"id": "price_premium", "recurring": {"interval": "year"}}}]},
        )

        snapshot = parse_subscription(json.loads(json.dumps(body)))

        assert snapshot.customer_id == "cus_999"
        assert snapshot.status == SubscriptionStatus.PAST_DUE
        assert snapshot.interval == "ANNUAL"
        assert snapshot.price_id == "price_premium"
        assert snapshot.latest_invoice_id == "in_1"
        assert snapshot.current_period_start == NOW

    def test_parse_invoice_defaults(self):
        invoice = parse_invoice({"id": "in_2"})

        assert invoice.status == "draft"
        assert invoice.currency == "mxn"
        assert invoice.to_dict()["created"] is None
