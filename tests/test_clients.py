# tests/test_clients.py
import hashlib
import hmac
import json

import pytest
import requests

from printflow.domain.errors import (
    AmbiguousOutcome,
    PermanentProviderError,
    TransientProviderError,
    WebhookVerificationError,
)
from printflow.services.fulfillment_client import FulfillmentClient
from printflow.services.generation_client import GenerationClient
from printflow.services.payment_client import PaymentClient
from printflow.utils import http
from tests.fakes import FULFILLMENT_WEBHOOK_SECRET


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.body = body

    def json(self):
        if self.body is None:
            raise ValueError("no json")
        return self.body


@pytest.mark.parametrize(
    "outcome, error, code",
    [
        (requests.ConnectTimeout("connect"), TransientProviderError, "provider_unavailable"),
        (requests.ReadTimeout("read"), AmbiguousOutcome, "provider_timeout"),
        (requests.ConnectionError("reset"), TransientProviderError, "provider_unavailable"),
        (FakeResponse(503), TransientProviderError, "provider_unavailable"),
        (FakeResponse(429), TransientProviderError, "provider_unavailable"),
        (FakeResponse(422, {"code": "invalid_address"}), PermanentProviderError, "invalid_address"),
        (FakeResponse(400, {"error": {"code": "bad_variant"}}), PermanentProviderError, "bad_variant"),
        (FakeResponse(400), PermanentProviderError, "provider_rejected"),
    ],
)
def test_send_maps_failures(monkeypatch, outcome, error, code):
    def fake_request(method, url, timeout=None, **kwargs):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(http.requests, "request", fake_request)

    with pytest.raises(error) as exc:
        http.send("POST", "http://provider.test/orders", timeout=1)
    assert exc.value.code == code


def test_send_allows_expected_status(monkeypatch):
    monkeypatch.setattr(http.requests, "request", lambda *a, **kw: FakeResponse(404))

    assert http.send("GET", "http://provider.test/x", timeout=1, allow_status=(404,)).status_code == 404


def test_fulfillment_submit_sends_idempotency_key(monkeypatch):
    seen = {}

    def fake_request(method, url, timeout=None, **kwargs):
        seen.update(method=method, url=url, **kwargs)
        return FakeResponse(201, {"id": 991})

    monkeypatch.setattr(http.requests, "request", fake_request)
    client = FulfillmentClient(base_url="http://provider.test/", api_key="k")

    ref = client.submit_order("order-1", [{"variant_id": 1, "quantity": 1}], {"country": "GB"})

    assert ref == "991"
    assert seen["url"] == "http://provider.test/orders"
    assert seen["headers"]["Idempotency-Key"] == "order-1"
    assert seen["json"]["external_id"] == "order-1"


def test_fulfillment_read_back(monkeypatch):
    results = [FakeResponse(404), FakeResponse(200, {"id": "fp_7"})]
    urls = []

    def fake_request(method, url, timeout=None, **kwargs):
        urls.append(url)
        return results.pop(0)

    monkeypatch.setattr(http.requests, "request", fake_request)
    client = FulfillmentClient(base_url="http://provider.test", api_key="k")

    assert client.find_order("order-1") is None
    assert client.find_order("order-1") == "fp_7"
    assert urls[0] == "http://provider.test/orders/external/order-1"


def test_fulfillment_status(monkeypatch):
    monkeypatch.setattr(
        http.requests,
        "request",
        lambda *a, **kw: FakeResponse(200, {"status": "fulfilled", "tracking_code": "TRK9"}),
    )
    client = FulfillmentClient(base_url="http://provider.test", api_key="k")

    report = client.get_order_status("fp_7")

    assert report.status == "fulfilled"
    assert report.tracking_code == "TRK9"
    assert report.tracking_url is None


def test_fulfillment_webhook_signature():
    client = FulfillmentClient(base_url="http://provider.test", webhook_secret=FULFILLMENT_WEBHOOK_SECRET)
    body = json.dumps({"provider_order_ref": "fp_1", "status": "shipped"}).encode()
    digest = hmac.new(FULFILLMENT_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()

    assert client.verify_webhook(body, f"sha256={digest}")["status"] == "shipped"
    with pytest.raises(WebhookVerificationError):
        client.verify_webhook(body, "sha256=deadbeef")
    with pytest.raises(WebhookVerificationError):
        client.verify_webhook(body, None)
    with pytest.raises(WebhookVerificationError):
        FulfillmentClient(base_url="http://provider.test", webhook_secret="").verify_webhook(body, digest)


def test_generation_poll_parses_job(monkeypatch):
    monkeypatch.setattr(
        http.requests,
        "request",
        lambda *a, **kw: FakeResponse(
            200,
            {
                "stage": "uploading",
                "state": "succeeded",
                "progress": 100,
                "assets": {"preview_url": "https://cdn.test/p.png", "mockup_urls": ["https://cdn.test/m.png"]},
            },
        ),
    )
    client = GenerationClient(base_url="http://gen.test", api_key="k")

    status = client.poll("job-1")

    assert status.done
    assert status.preview_url == "https://cdn.test/p.png"
    assert status.mockup_urls == ["https://cdn.test/m.png"]


def test_generation_poll_reports_failure(monkeypatch):
    monkeypatch.setattr(
        http.requests,
        "request",
        lambda *a, **kw: FakeResponse(
            200,
            {"stage": "generating_images", "state": "failed", "failure": {"code": "content_policy"}},
        ),
    )

    status = GenerationClient(base_url="http://gen.test", api_key="k").poll("job-1")

    assert status.failed
    assert status.failure_code == "content_policy"
    assert status.retryable is False


def test_payment_events():
    succeeded = PaymentClient.to_payment_event(
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "amount": 2999}}}
    )
    assert succeeded.payment_ref == "pi_1"
    assert succeeded.amount_minor == 2999

    failed = PaymentClient.to_payment_event(
        {
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_2", "last_payment_error": {"decline_code": "insufficient_funds"}}},
        }
    )
    assert failed.failure_code == "insufficient_funds"

    refunded = PaymentClient.to_payment_event(
        {
            "type": "charge.refunded",
            "data": {"object": {"payment_intent": "pi_1", "amount": 2999, "amount_refunded": 1000}},
        }
    )
    assert refunded.payment_ref == "pi_1"
    assert refunded.amount_refunded_minor == 1000
