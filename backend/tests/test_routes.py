import asyncio
import base64
import json

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.payment.config import X402Settings
from app.payment.ledger import PaymentLedger, compute_signature_hash
from app.payment.middleware import encode_payment_header
from app.payment.models import PaymentStatus

from conftest import TX_HASH, FakeExecutor, FakeFacilitator, FakeNotifier, ProviderError, make_payment

ADMIN = {"Authorization": "Bearer admin-token"}
INTERNAL = {"Authorization": "Bearer internal-key"}


@pytest.fixture
def app_parts(settings):
    ledger = PaymentLedger.from_url("sqlite://")
    ledger.init_db()
    return {
        "ledger": ledger,
        "facilitator": FakeFacilitator(),
        "executor": FakeExecutor(),
        "notifier": FakeNotifier(),
    }


@pytest.fixture
def client(settings, app_parts):
    return TestClient(create_app(settings, **app_parts))


def pay(value=12000):
    payment = make_payment(value, sign=False)
    return payment, {"X-PAYMENT": encode_payment_header(payment)}


def generate(client, headers=None, **body):
    body.setdefault("toolId", "chatgpt-free")
    body.setdefault("inputs", {"prompt": "hello"})
    return client.post("/api/x402/generate", json=body, headers=headers or {})


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["x402Enabled"] is True


def test_disabled_app_has_no_payment_routes():
    app = create_app(X402Settings(_env_file=None))
    client = TestClient(app)

    assert client.get("/health").json()["x402Enabled"] is False
    assert client.get("/api/x402/tools").status_code == 404


def test_generate_without_payment_is_402(client):
    response = generate(client)

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "PAYMENT_REQUIRED"
    assert body["paymentRequired"]["accepts"][0]["amount"] == "12000"
    assert body["paymentRequired"]["resource"]["url"].endswith("/api/x402/generate")
    header = json.loads(base64.b64decode(response.headers["x-payment-required"]))
    assert header == body["paymentRequired"]


def test_generate_with_payment_settles(client, app_parts):
    payment, headers = pay()
    response = generate(client, headers)

    assert response.status_code == 200
    body = response.json()
    assert body["x402"]["settled"] is True
    assert body["x402"]["transaction"] == TX_HASH
    settlement = json.loads(base64.b64decode(response.headers["x-payment-response"]))
    assert settlement["success"] is True

    record = app_parts["ledger"].find_by_signature(
        compute_signature_hash(payment["payload"]["signature"])
    )
    assert record.status == PaymentStatus.SETTLED.value

    replay = generate(client, headers)
    assert replay.status_code == 400
    assert replay.json()["error"] == "PAYMENT_ALREADY_USED"
    assert len(app_parts["executor"].calls) == 1


def test_insufficient_payment(client):
    _, headers = pay(10000)
    response = generate(client, headers)

    assert response.status_code == 402
    assert response.json()["error"] == "INSUFFICIENT_PAYMENT"
    assert response.json()["required"] == 0.012
    assert response.json()["provided"] == 0.01


def test_execution_failure(settings, app_parts):
    app_parts["executor"] = FakeExecutor(error=ProviderError("upstream 500"))
    client = TestClient(create_app(settings, **app_parts))

    response = generate(client, pay()[1])

    assert response.status_code == 500
    assert response.json()["error"] == "EXECUTION_FAILED"
    assert app_parts["facilitator"].settle_calls == []


def test_malformed_payment_header(client):
    response = generate(client, {"X-PAYMENT": "%%%"})

    assert response.status_code == 400
    assert response.json()["error"] == "MALFORMED_PAYMENT"


def test_generate_validates_request(client):
    assert client.post("/api/x402/generate", json={"inputs": {}}).status_code == 400
    assert generate(client, toolId="nope").status_code == 404
    assert generate(client, toolId="dalle-image", inputs={"n": 9}).status_code == 400


def test_webhook_url_must_be_public_https(client):
    response = generate(client, delivery={"mode": "webhook", "url": "http://localhost:9000/hook"})
    assert response.status_code == 400


def test_deferred_generation_with_callback(settings, app_parts):
    app_parts["executor"] = FakeExecutor(pending=True)
    client = TestClient(create_app(settings, **app_parts))

    accepted = generate(client, pay()[1], delivery={"mode": "poll"})
    assert accepted.status_code == 202
    generation_id = accepted.json()["generationId"]

    status = client.get(f"/api/x402/status/{generation_id}")
    assert status.json()["status"] == "pending"

    callback = {"status": "completed", "outputs": {"text": "done"}}
    assert client.post(f"/api/x402/callback/{generation_id}", json=callback).status_code == 401

    response = client.post(f"/api/x402/callback/{generation_id}", json=callback, headers=INTERNAL)
    assert response.status_code == 200
    assert response.json()["x402"]["settled"] is True

    again = client.post(f"/api/x402/callback/{generation_id}", json=callback, headers=INTERNAL)
    assert again.status_code == 409

    status = client.get(f"/api/x402/status/{generation_id}").json()
    assert status["status"] == "completed"
    assert status["paymentStatus"] == PaymentStatus.SETTLED.value


def test_status_unknown_generation(client):
    assert client.get("/api/x402/status/nope").status_code == 404


def test_quote_and_tools(client):
    quote = client.get("/api/x402/quote", params={"toolId": "chatgpt-free"})
    assert quote.status_code == 200
    assert quote.json()["quote"]["totalCostAtomic"] == "12000"
    assert quote.json()["paymentRequired"]["accepts"][0]["amount"] == "12000"

    assert client.get("/api/x402/quote", params={"toolId": "nope"}).status_code == 404

    tools = client.get("/api/x402/tools").json()["tools"]
    tool_ids = {tool["toolId"] for tool in tools}
    assert "chatgpt-free" in tool_ids
    assert "upscale-internal" not in tool_ids


def test_admin_endpoints(settings, app_parts):
    app_parts["facilitator"] = FakeFacilitator(settle_results=[asyncio.TimeoutError()] * 3)
    client = TestClient(create_app(settings, **app_parts))

    payment, headers = pay()
    response = generate(client, headers)
    assert response.json()["x402"]["settlementError"] == "timeout"
    signature_hash = compute_signature_hash(payment["payload"]["signature"])

    assert client.get(f"/api/x402/payments/{signature_hash}").status_code == 401
    record = client.get(f"/api/x402/payments/{signature_hash}", headers=ADMIN).json()
    assert record["status"] == PaymentStatus.UNSETTLED.value

    listing = client.get("/api/x402/payments", params={"status": "unsettled"}, headers=ADMIN).json()
    assert listing["count"] == 1
    assert client.get("/api/x402/payments", headers=ADMIN).status_code == 400
    assert client.get("/api/x402/payments", params={"status": "bogus"}, headers=ADMIN).status_code == 400

    reconciled = client.post(f"/api/x402/payments/{signature_hash}/reconcile", headers=ADMIN)
    assert reconciled.status_code == 200
    assert reconciled.json()["status"] == PaymentStatus.SETTLED.value

    again = client.post(f"/api/x402/payments/{signature_hash}/reconcile", headers=ADMIN)
    assert again.status_code == 409
    assert client.get("/api/x402/payments/unknown", headers=ADMIN).status_code == 404
