"""HTTP surface: error rendering, auth gates, webhooks and operator routes."""

import json
import time
from types import SimpleNamespace
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from lumira.common.rate_limit import TokenBucketLimiter
from lumira.common.signatures import NONCE_HEADER, SIGNATURE_HEADER, TIMESTAMP_HEADER, callback_signature
from lumira.common.state_machine import OrderStatus
from lumira.services.api import main
from test_payments import stripe_header, succeeded_event


OPS = {"x-api-key": "test-api-key"}
CALLBACK_SECRET = "callback-test-secret"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main.payments, "auto_generate", False)
    with TestClient(main.app) as test_client:
        yield test_client


def signed_headers(body: bytes, nonce: str | None = None, timestamp: int | None = None) -> dict:
    ts = str(int(time.time()) if timestamp is None else timestamp)
    nonce = nonce or uuid4().hex
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: callback_signature(CALLBACK_SECRET, ts, nonce, body),
        TIMESTAMP_HEADER: ts,
        NONCE_HEADER: nonce,
    }


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    assert "order_transitions_total" in client.get("/metrics").text


def test_ops_routes_require_api_key(client):
    resp = client.get("/ops/orders")
    assert resp.status_code == 401
    assert resp.json()["error"]["type"] == "authentication_error"


def test_unknown_order_renders_not_found(client):
    resp = client.get("/orders/does-not-exist")
    assert resp.status_code == 404
    assert resp.json() == {"error": {"type": "not_found", "message": "order does-not-exist not found"}}


def test_payment_webhook_answers_generically(client, make_order):
    order = make_order(OrderStatus.PENDING)
    payload = succeeded_event("evt_api_1", {"order_id": order.id})

    bad = client.post("/payments/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=deadbeef"})
    assert bad.status_code == 400
    assert bad.json()["error"]["type"] == "invalid_signature"

    for _ in range(2):
        resp = client.post("/payments/webhook", content=payload, headers={"Stripe-Signature": stripe_header(payload)})
        assert resp.status_code == 200
        assert resp.json() == {"received": True}
    assert client.get(f"/orders/{order.id}").json()["status"] == OrderStatus.PAID


def test_callback_route_applies_once_and_rejects_replay(client, make_order):
    order = make_order(OrderStatus.PAID)
    body = json.dumps(
        {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "status": "ready",
            "content": {"archetype": "Le Sage", "reading": "Text", "audioUrl": "https://cdn.test/a.mp3"},
        }
    ).encode()
    headers = signed_headers(body)

    first = client.post("/webhooks/generation-callback", content=body, headers=headers)
    assert first.status_code == 200
    assert first.json()["status"] == OrderStatus.AWAITING_VALIDATION
    assert first.json()["generated_content"]["audioUrl"] == "https://cdn.test/a.mp3"

    replay = client.post("/webhooks/generation-callback", content=body, headers=headers)
    assert replay.status_code == 401
    assert replay.json()["error"]["message"] == "replay detected"


def test_callback_route_rejects_stale_timestamp(client, make_order):
    order = make_order(OrderStatus.PAID)
    body = json.dumps({"orderId": order.id, "orderNumber": order.order_number, "status": "ready"}).encode()
    resp = client.post(
        "/webhooks/generation-callback",
        content=body,
        headers=signed_headers(body, timestamp=int(time.time()) - 301),
    )
    assert resp.status_code == 401
    assert client.get(f"/orders/{order.id}").json()["status"] == OrderStatus.PAID


def test_callback_route_conflict_on_completed_order(client, make_order):
    order = make_order(OrderStatus.COMPLETED)
    body = json.dumps({"orderId": order.id, "orderNumber": order.order_number, "status": "ready"}).encode()
    resp = client.post("/webhooks/generation-callback", content=body, headers=signed_headers(body))
    assert resp.status_code == 409


def test_callback_route_failed_status_acknowledges(client, make_order):
    order = make_order(OrderStatus.PROCESSING)
    body = json.dumps({"orderId": order.id, "orderNumber": order.order_number, "status": "failed"}).encode()
    resp = client.post("/webhooks/generation-callback", content=body, headers=signed_headers(body))
    assert resp.json() == {"status": "acknowledged", "error": "Generation failed"}


def test_callback_route_validates_body_after_signature(client):
    body = b'{"orderId": "o1", "status": "maybe"}'
    resp = client.post("/webhooks/generation-callback", content=body, headers=signed_headers(body))
    assert resp.status_code == 422


def test_validate_approve_and_reject(client, make_order):
    approved = make_order(OrderStatus.AWAITING_VALIDATION)
    resp = client.post(
        f"/ops/orders/{approved.id}/validate",
        json={"action": "approve", "operator": "expert-1", "notes": "lovely"},
        headers=OPS,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == OrderStatus.COMPLETED

    rejected = make_order(OrderStatus.AWAITING_VALIDATION, email="other@example.com")
    resp = client.post(
        f"/ops/orders/{rejected.id}/validate",
        json={"action": "reject", "operator": "expert-1", "reason": "too generic"},
        headers=OPS,
    )
    detail = client.get(f"/ops/orders/{rejected.id}", headers=OPS).json()
    assert resp.json()["status"] == OrderStatus.PROCESSING
    assert detail["revision_count"] == 1
    assert detail["generated_content"] is None
    assert detail["timeline"][-1]["reason"] == "rejected_by:expert-1"


def test_validate_requires_awaiting_validation(client, make_order):
    order = make_order(OrderStatus.PAID)
    resp = client.post(
        f"/ops/orders/{order.id}/validate",
        json={"action": "approve", "operator": "expert-1"},
        headers=OPS,
    )
    assert resp.status_code == 409


def test_list_and_purge(client, make_order):
    order = make_order(OrderStatus.PAID)
    listed = client.get("/ops/orders", params={"status": OrderStatus.PAID}, headers=OPS).json()
    assert [item["id"] for item in listed] == [order.id]

    resp = client.delete(f"/ops/orders/{order.id}", headers=OPS)
    assert resp.json() == {"deleted": True, "order_number": order.order_number}
    assert client.get(f"/orders/{order.id}").status_code == 404


def test_checkout_intent_is_rate_limited(client, monkeypatch):
    import stripe

    monkeypatch.setattr(main, "limiter", TokenBucketLimiter(1))
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "create",
        lambda **params: SimpleNamespace(id=f"pi_{uuid4().hex[:8]}", client_secret="secret"),
    )
    body = {"email": "new@example.com", "firstName": "Noa", "level": 1, "amountCents": 2700}

    first = client.post("/payments/checkout-intent", json=body)
    assert first.status_code == 200
    assert first.json()["order_number"].startswith("LU")

    second = client.post("/payments/checkout-intent", json=body)
    assert second.status_code == 429
    assert "Retry-After" in second.headers


def test_payment_webhook_storage_failure_asks_for_redelivery(client, make_order, monkeypatch):
    from sqlalchemy.exc import OperationalError

    def db_down(order_id):
        raise OperationalError("SELECT", {}, Exception("database unavailable"))

    order = make_order(OrderStatus.PENDING)
    monkeypatch.setattr(main.store, "get_order", db_down)
    payload = succeeded_event("evt_api_db", {"order_id": order.id})

    resp = client.post("/payments/webhook", content=payload, headers={"Stripe-Signature": stripe_header(payload)})
    assert resp.status_code == 503
    assert resp.json()["error"]["type"] == "retryable"


def test_payment_webhook_acknowledges_bad_checkout_metadata(client):
    payload = succeeded_event("evt_api_level", {"email": "x@example.com", "level": "premium"}, intent_id="pi_api_level")
    resp = client.post("/payments/webhook", content=payload, headers={"Stripe-Signature": stripe_header(payload)})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert main.store.find_by_payment_intent("pi_api_level").level == 1
