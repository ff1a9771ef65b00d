"""HTTP API behaviour, end to end through the FastAPI app and in-memory store."""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from paysettle.common.config import CommonSettings
from paysettle.common.jobs import drain
from paysettle.common.models import Job, Merchant, Payment, Refund
from paysettle.services.gateway.app import create_app
from paysettle.services.gateway.idempotency import IdempotencyGuard
from paysettle.services.gateway.service import GatewayService
from paysettle.services.settlement.service import OutcomePolicy, SettlementService
from paysettle.services.webhooks.service import WebhookDeliveryService, enqueue_webhook
from paysettle.services.webhooks.store import WebhookLogStore

from conftest import API_KEY, API_SECRET, MERCHANT_ID, WEBHOOK_URL, make_order, make_payment

AUTH = {"X-Api-Key": API_KEY, "X-Api-Secret": API_SECRET}


@pytest.fixture
def client(session_factory, queue, merchant, clock):
    service = GatewayService(session_factory, queue, guard=IdempotencyGuard(session_factory, clock=clock))
    return TestClient(create_app(service))


def _payment_rows(session_factory) -> int:
    with session_factory() as db:
        return db.query(Payment).count()


def _create_order(client, amount=500) -> dict:
    resp = client.post("/api/v1/orders", json={"amount": amount, "currency": "INR"}, headers=AUTH)
    assert resp.status_code == 201
    return resp.json()


def test_health_reports_database(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["redis"] == "disconnected"


def test_missing_or_wrong_credentials_are_rejected(client):
    resp = client.post("/api/v1/orders", json={"amount": 500})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTHENTICATION_ERROR"

    resp = client.get("/api/v1/orders", headers={"X-Api-Key": API_KEY, "X-Api-Secret": "wrong"})
    assert resp.status_code == 401


def test_create_and_fetch_order(client):
    order = _create_order(client)

    assert order["id"].startswith("order_")
    assert len(order["id"]) == 22
    assert order["status"] == "created"
    assert order["merchant_id"] == MERCHANT_ID
    assert client.get(f"/api/v1/orders/{order['id']}", headers=AUTH).json()["amount"] == 500
    assert client.get(f"/api/v1/orders/{order['id']}/public").json()["status"] == "created"
    assert client.get("/api/v1/orders/order_missing", headers=AUTH).status_code == 404


@pytest.mark.parametrize("amount", [99, 0, -5])
def test_order_below_minimum_is_rejected(client, amount):
    resp = client.post("/api/v1/orders", json={"amount": amount}, headers=AUTH)

    assert resp.status_code == 400
    assert resp.json()["error"] == {"code": "BAD_REQUEST_ERROR", "description": "amount must be at least 100"}


def test_order_amount_must_be_an_integer(client):
    resp = client.post("/api/v1/orders", json={"amount": "500"}, headers=AUTH)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "BAD_REQUEST_ERROR"


def test_create_payment_queues_settlement(client, session_factory, queue):
    order = _create_order(client)

    resp = client.post("/api/v1/payments", json={"order_id": order["id"], "method": "upi", "vpa": "a@b"}, headers=AUTH)

    assert resp.status_code == 201
    payment = resp.json()
    assert payment["id"].startswith("pay_")
    assert payment["status"] == "pending"
    assert payment["amount"] == 500
    assert payment["vpa"] == "a@b"
    assert queue.counts("payment").waiting == 1


def test_card_payment_stores_network_and_last4(client):
    order = _create_order(client)
    card = {"number": "4111 1111 1111 1111", "expiry_month": "12", "expiry_year": "2099", "cvv": "123"}

    payment = client.post(
        "/api/v1/payments", json={"order_id": order["id"], "method": "card", "card": card}, headers=AUTH
    ).json()

    assert payment["card_network"] == "visa"
    assert payment["card_last4"] == "1111"
    assert "number" not in payment


@pytest.mark.parametrize(
    "body,code",
    [
        ({"method": "upi", "vpa": "not-a-vpa"}, "INVALID_VPA"),
        ({"method": "card", "card": {"number": "4111111111111112", "expiry_month": "12", "expiry_year": "2099"}}, "INVALID_CARD"),
        ({"method": "card", "card": {"number": "4111111111111111", "expiry_month": "01", "expiry_year": "2020"}}, "EXPIRED_CARD"),
        ({"method": "netbanking"}, "BAD_REQUEST_ERROR"),
    ],
)
def test_invalid_payment_is_rejected_before_queueing(client, session_factory, queue, body, code):
    order = _create_order(client)

    resp = client.post("/api/v1/payments", json={"order_id": order["id"], **body}, headers=AUTH)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == code
    assert _payment_rows(session_factory) == 0
    assert queue.counts("payment").waiting == 0


def test_payment_for_unknown_order_is_not_found(client):
    resp = client.post("/api/v1/payments", json={"order_id": "order_missing", "method": "upi", "vpa": "a@b"}, headers=AUTH)

    assert resp.status_code == 404


def test_idempotency_key_replays_first_response(client, session_factory, queue):
    order = _create_order(client)
    body = {"order_id": order["id"], "method": "upi", "vpa": "a@b"}
    headers = {**AUTH, "Idempotency-Key": "checkout-42"}

    first = client.post("/api/v1/payments", json=body, headers=headers)
    second = client.post("/api/v1/payments", json=body, headers=headers)

    assert first.status_code == second.status_code == 201
    assert first.json() == second.json()
    assert _payment_rows(session_factory) == 1
    assert queue.counts("payment").waiting == 1


def test_expired_idempotency_key_creates_a_new_payment(client, session_factory, clock):
    order = _create_order(client)
    body = {"order_id": order["id"], "method": "upi", "vpa": "a@b"}
    headers = {**AUTH, "Idempotency-Key": "checkout-43"}

    first = client.post("/api/v1/payments", json=body, headers=headers).json()
    clock.advance(86400 + 1)
    second = client.post("/api/v1/payments", json=body, headers=headers).json()

    assert first["id"] != second["id"]
    assert _payment_rows(session_factory) == 2


def test_public_payment_skips_credentials(client):
    order = _create_order(client)

    resp = client.post("/api/v1/payments/public", json={"order_id": order["id"], "method": "upi", "vpa": "a@b"})

    assert resp.status_code == 201
    assert client.get(f"/api/v1/payments/{resp.json()['id']}").json()["status"] == "pending"


def test_capture_rules(client, session_factory):
    pending = make_payment(session_factory, make_order(session_factory))
    settled = make_payment(session_factory, make_order(session_factory), status="success")

    resp = client.post(f"/api/v1/payments/{pending.id}/capture", headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["error"]["description"] == "Payment not in capturable state"

    resp = client.post(f"/api/v1/payments/{settled.id}/capture", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["captured"] is True

    resp = client.post(f"/api/v1/payments/{settled.id}/capture", headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["error"]["description"] == "Payment already captured"


def test_refund_cannot_exceed_remaining_amount(client, session_factory, queue):
    payment = make_payment(session_factory, make_order(session_factory, amount=1000), status="success", captured=True)
    with session_factory() as db:
        db.add(Refund(id="rfnd_existing0000001", payment_id=payment.id, merchant_id=MERCHANT_ID, amount=600))
        db.commit()

    rejected = client.post(f"/api/v1/payments/{payment.id}/refunds", json={"amount": 500}, headers=AUTH)
    accepted = client.post(f"/api/v1/payments/{payment.id}/refunds", json={"amount": 400, "reason": "return"}, headers=AUTH)

    assert rejected.status_code == 400
    assert rejected.json()["error"]["description"] == "Refund amount exceeds available"
    assert accepted.status_code == 201
    refund = accepted.json()
    assert refund["id"].startswith("rfnd_")
    assert refund["status"] == "pending"
    assert queue.counts("refund").waiting == 1
    assert client.get(f"/api/v1/refunds/{refund['id']}", headers=AUTH).json()["amount"] == 400


def test_refund_requires_successful_payment(client, session_factory):
    payment = make_payment(session_factory, make_order(session_factory))

    resp = client.post(f"/api/v1/payments/{payment.id}/refunds", json={"amount": 100}, headers=AUTH)

    assert resp.status_code == 400


def test_webhook_log_listing_and_manual_retry(client, session_factory, queue):
    with session_factory() as db:
        log = enqueue_webhook(db, queue, WebhookLogStore(), MERCHANT_ID, "payment.failed", {"payment": {"id": "pay_x"}})
        db.commit()
        log_id = log.id

    listing = client.get("/api/v1/webhooks?limit=5", headers=AUTH).json()
    assert listing["limit"] == 5
    assert [item["id"] for item in listing["data"]] == [log_id]

    resp = client.post(f"/api/v1/webhooks/{log_id}/retry", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"id": log_id, "status": "pending", "message": "Webhook retry scheduled"}
    assert queue.counts("webhook").waiting == 2

    assert client.post("/api/v1/webhooks/unknown/retry", headers=AUTH).status_code == 404


def test_job_status_reports_payment_queue(client):
    order = _create_order(client)
    client.post("/api/v1/payments", json={"order_id": order["id"], "method": "upi", "vpa": "a@b"}, headers=AUTH)

    status = client.get("/api/v1/test/jobs/status").json()

    assert status["pending"] == 1
    assert status["processing"] == 0
    assert status["worker_status"] == "running"
    assert set(status["queues"]) == {"payment", "refund", "webhook"}


def test_payment_flow_end_to_end(client, session_factory, queue):
    order = _create_order(client, amount=500)
    payment = client.post(
        "/api/v1/payments", json={"order_id": order["id"], "method": "upi", "vpa": "a@b"}, headers=AUTH
    ).json()

    settlement = SettlementService(
        session_factory, queue, policy=OutcomePolicy(test_mode=True, forced_success=True, test_delay_ms=0)
    )
    asyncio.run(drain(queue, "payment", settlement.handle_payment))

    settled = client.get(f"/api/v1/payments/{payment['id']}").json()
    assert settled["status"] == "success"
    assert settled["captured"] is True
    assert client.get(f"/api/v1/orders/{order['id']}", headers=AUTH).json()["status"] == "paid"
    [row] = client.get("/api/v1/orders", headers=AUTH).json()
    assert row["payment_id"] == payment["id"]
    assert row["refunded_amount"] == 0

    logs = client.get("/api/v1/webhooks", headers=AUTH).json()["data"]
    assert [(log["event"], log["status"]) for log in logs] == [("payment.success", "pending")]

    received = []

    def merchant_endpoint(request):
        received.append(request)
        return httpx.Response(200, text="ok")

    webhooks = WebhookDeliveryService(
        session_factory, queue, schedule=(0, 0, 0, 0, 0), transport=httpx.MockTransport(merchant_endpoint)
    )
    asyncio.run(drain(queue, "webhook", webhooks.deliver))

    [log] = client.get("/api/v1/webhooks", headers=AUTH).json()["data"]
    assert log["status"] == "success"
    assert log["attempts"] == 1
    assert str(received[0].url) == WEBHOOK_URL
    with session_factory() as db:
        assert db.query(Job).filter(Job.status == "completed").count() == 2


def test_metrics_endpoint_exposes_prometheus_text(client):
    client.get("/health")

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "http_requests_total" in resp.text


def test_test_merchant_bootstrap_is_idempotent(session_factory, queue):
    settings = CommonSettings(test_merchant_id="11111111-2222-3333-4444-555555555555", test_merchant_email="boot@example.com")
    service = GatewayService(session_factory, queue, guard=IdempotencyGuard(session_factory))

    service.ensure_test_merchant(settings)
    service.ensure_test_merchant(settings)

    with session_factory() as db:
        assert db.query(Merchant).count() == 1
    merchant = service.authenticate(settings.test_merchant_api_key, settings.test_merchant_api_secret)
    assert merchant.id == "11111111-2222-3333-4444-555555555555"


def test_login_returns_profile_without_secrets(client):
    resp = client.post("/api/v1/login", json={"email": "test@example.com", "secret": API_SECRET})

    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == MERCHANT_ID
    assert body["api_key"] == API_KEY
    assert body["webhook_url"] == WEBHOOK_URL
    assert "api_secret" not in body
    assert "webhook_secret" not in body


@pytest.mark.parametrize("body", [{}, {"email": "test@example.com"}, {"secret": API_SECRET}, {"email": "", "secret": ""}])
def test_login_requires_email_and_secret(client, body):
    resp = client.post("/api/v1/login", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == {"code": "BAD_REQUEST_ERROR", "description": "Email and Secret are required"}


@pytest.mark.parametrize(
    "body",
    [
        {"email": "test@example.com", "secret": "wrong"},
        {"email": "nobody@example.com", "secret": API_SECRET},
        {"email": "test@example.com", "secret": API_KEY},
    ],
)
def test_login_rejects_bad_credentials(client, body):
    resp = client.post("/api/v1/login", json=body)

    assert resp.status_code == 401
    assert resp.json()["error"] == {"code": "AUTHENTICATION_ERROR", "description": "Invalid credentials"}


def test_correlation_id_is_echoed_and_carried_on_jobs(client, session_factory):
    order = _create_order(client)

    resp = client.post(
        "/api/v1/payments",
        json={"order_id": order["id"], "method": "upi", "vpa": "a@b"},
        headers={**AUTH, "X-Correlation-Id": "corr-checkout-1"},
    )

    assert resp.headers["X-Correlation-Id"] == "corr-checkout-1"
    with session_factory() as db:
        [job] = db.query(Job).filter(Job.topic == "payment").all()
    assert job.trace_id == "corr-checkout-1"
    assert client.get("/health").headers["X-Correlation-Id"]
