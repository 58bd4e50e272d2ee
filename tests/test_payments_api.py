import base64
import json

import psycopg
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from storefront.main import app
from storefront.payments import liqpay, monobank
from storefront.routes import payments as payments_routes


client = TestClient(app)


@pytest.fixture
def wired(monkeypatch, payment_store, fake_get_conn):
    notified = []
    monkeypatch.setattr(payments_routes, "get_conn", fake_get_conn)
    monkeypatch.setattr(payments_routes.service, "notify_paid", lambda conn, order_id, provider: notified.append((order_id, provider)) or True)
    monkeypatch.setenv("LIQPAY_PRIVATE_KEY", "priv")
    monkeypatch.setenv("LIQPAY_PUBLIC_KEY", "pub")
    return payment_store, notified


def _liqpay_fields(payload, key="priv"):
    data = liqpay.encode_data(payload)
    return {"data": data, "signature": liqpay.sign(data, key)}


def test_liqpay_callback_form_marks_order_paid(wired):
    store, notified = wired
    store.add_order(11)

    r = client.post(
        "/api/payments/liqpay/callback",
        data=_liqpay_fields({"order_id": "11", "status": "success", "transaction_id": 555, "amount": 100}),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["order_id"] == 11
    assert body["payment_status"] == "paid"
    assert store.orders[11]["status"] == "processing"
    assert notified == [(11, "liqpay")]
    assert r.headers["X-RateLimit-Limit"] == "50"


def test_liqpay_repeat_delivery_is_acknowledged_once(wired):
    store, notified = wired
    store.add_order(12)
    fields = _liqpay_fields({"order_id": "12", "status": "success", "transaction_id": 777})

    assert client.post("/api/payments/liqpay/callback", data=fields).status_code == 200
    again = client.post("/api/payments/liqpay/callback", json=fields)

    assert again.status_code == 200
    assert again.json()["message"] == "Transaction already processed"
    assert len(notified) == 1
    assert len(store.history[12]) == 1


def test_liqpay_callback_rejects_bad_input(wired):
    store, _ = wired
    store.add_order(13)

    assert client.post("/api/payments/liqpay/callback", data={"data": "x"}).status_code == 400

    forged = _liqpay_fields({"order_id": "13", "status": "success", "transaction_id": 1}, key="attacker")
    r = client.post("/api/payments/liqpay/callback", data=forged)
    assert r.status_code == 401
    assert store.orders[13]["payment_status"] == "pending"

    bad_order = _liqpay_fields({"order_id": "abc", "status": "success", "transaction_id": 2})
    assert client.post("/api/payments/liqpay/callback", data=bad_order).status_code == 400

    r = client.post(
        "/api/payments/liqpay/callback",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 400


def test_liqpay_callback_without_private_key_is_server_error(wired, monkeypatch):
    monkeypatch.delenv("LIQPAY_PRIVATE_KEY", raising=False)
    r = client.post("/api/payments/liqpay/callback", data=_liqpay_fields({"order_id": "1", "status": "success"}))
    assert r.status_code == 500


def test_liqpay_callback_for_unknown_order_is_404(wired):
    r = client.post(
        "/api/payments/liqpay/callback",
        data=_liqpay_fields({"order_id": "999", "status": "success", "transaction_id": 3}),
    )
    assert r.status_code == 404


def test_failed_liqpay_payment_does_not_notify(wired):
    store, notified = wired
    store.add_order(14)
    r = client.post(
        "/api/payments/liqpay/callback",
        data=_liqpay_fields({"order_id": "14", "status": "failure", "transaction_id": 4}),
    )
    assert r.json()["payment_status"] == "failed"
    assert store.orders[14]["status"] == "pending"
    assert notified == []


@pytest.fixture
def mono_key(monkeypatch):
    private_key = ec.generate_private_key(ec.SECP256R1())
    pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    monkeypatch.setenv("MONOBANK_PUBKEY", base64.b64encode(pem).decode())
    monobank.pubkey_cache.invalidate()
    yield private_key
    monobank.pubkey_cache.invalidate()


def _signed(private_key, payload):
    body = json.dumps(payload).encode()
    sig = base64.b64encode(private_key.sign(body, ec.ECDSA(hashes.SHA256()))).decode()
    return body, sig


def test_monobank_webhook_marks_invoice_paid(wired, mono_key):
    store, notified = wired
    store.add_order(21, invoice_id="inv-21")
    body, sig = _signed(mono_key, {"invoiceId": "inv-21", "status": "success", "finalAmount": 50000, "modifiedDate": "2025-05-01T10:00:00Z"})

    r = client.post("/api/payments/monobank/webhook", content=body, headers={"X-Sign": sig})

    assert r.status_code == 200, r.text
    assert r.json()["payment_status"] == "paid"
    assert "mono:inv-21:success" in store.transactions
    assert notified == [(21, "monobank")]


def test_monobank_webhook_rejects_unsigned_and_garbage(wired, mono_key):
    store, _ = wired
    store.add_order(22, invoice_id="inv-22")
    body, sig = _signed(mono_key, {"invoiceId": "inv-22", "status": "success"})

    assert client.post("/api/payments/monobank/webhook", content=body).status_code == 401
    assert client.post("/api/payments/monobank/webhook", content=body + b"x", headers={"X-Sign": sig}).status_code == 401

    garbage, garbage_sig = b"not json", base64.b64encode(mono_key.sign(b"not json", ec.ECDSA(hashes.SHA256()))).decode()
    assert client.post("/api/payments/monobank/webhook", content=garbage, headers={"X-Sign": garbage_sig}).status_code == 400

    missing, missing_sig = _signed(mono_key, {"status": "success"})
    assert client.post("/api/payments/monobank/webhook", content=missing, headers={"X-Sign": missing_sig}).status_code == 400
    assert store.orders[22]["payment_status"] == "pending"


def test_liqpay_pending_then_success_reaches_paid(wired):
    store, notified = wired
    store.add_order(15)

    first = client.post(
        "/api/payments/liqpay/callback",
        data=_liqpay_fields({"order_id": "15", "status": "wait_accept", "transaction_id": 900}),
    )
    assert first.json()["payment_status"] == "processing"
    assert store.orders[15]["status"] == "pending"

    second = client.post(
        "/api/payments/liqpay/callback",
        data=_liqpay_fields({"order_id": "15", "status": "success", "transaction_id": 900}),
    )
    assert second.json()["message"] == "Payment processed"
    assert store.orders[15]["payment_status"] == "paid"
    assert store.orders[15]["status"] == "processing"
    assert set(store.transactions) == {"liqpay:900:wait_accept", "liqpay:900:success"}
    assert notified == [(15, "liqpay")]


def test_monobank_webhook_for_unknown_invoice_is_404(wired, mono_key):
    store, notified = wired
    body, sig = _signed(mono_key, {"invoiceId": "inv-missing", "status": "success"})

    r = client.post("/api/payments/monobank/webhook", content=body, headers={"X-Sign": sig})

    assert r.status_code == 404
    assert store.transactions == {}
    assert notified == []


def test_webhook_database_error_is_500_and_retry_applies(wired, mono_key):
    store, notified = wired
    store.add_order(23, invoice_id="inv-23")
    store.fail_on_insert = psycopg.OperationalError("connection lost")
    body, sig = _signed(mono_key, {"invoiceId": "inv-23", "status": "success"})

    r = client.post("/api/payments/monobank/webhook", content=body, headers={"X-Sign": sig})
    assert r.status_code == 500
    assert r.json()["detail"] == "Failed to update order"
    assert store.orders[23]["payment_status"] == "pending"

    store.fail_on_insert = None
    retry = client.post("/api/payments/monobank/webhook", content=body, headers={"X-Sign": sig})
    assert retry.status_code == 200
    assert notified == [(23, "monobank")]


@pytest.fixture
def monobank_orders(wired, monkeypatch):
    store, notified = wired
    monkeypatch.setattr(
        payments_routes.orders_store,
        "fetch_order",
        lambda conn, order_id: dict(store.orders[order_id]) if order_id in store.orders else None,
    )
    return store, notified


def test_monobank_status_poll_applies_provider_status(monobank_orders, monkeypatch):
    store, notified = monobank_orders
    store.add_order(31, invoice_id="inv-31")["payment_method"] = "monobank_card"
    polled = []

    def fake_status(invoice_id):
        polled.append(invoice_id)
        return {"status": "success", "modifiedDate": "2025-05-01T10:00:00Z"}

    monkeypatch.setattr(payments_routes.monobank, "invoice_status", fake_status)

    r = client.get("/api/payments/monobank/status/31")
    assert r.status_code == 200, r.text
    assert r.json() == {"order_id": 31, "payment_status": "paid", "order_status": "processing", "provider_status": "success"}
    assert store.transactions["mono:inv-31:success"]["status"] == "paid"

    again = client.get("/api/payments/monobank/status/31")
    assert again.json()["payment_status"] == "paid"
    assert again.json()["order_status"] == "processing"
    assert polled == ["inv-31", "inv-31"]
    assert notified == [(31, "monobank")]


def test_monobank_status_poll_guards(monobank_orders, monkeypatch):
    store, _ = monobank_orders
    store.add_order(32)["payment_method"] = "cod"
    store.add_order(33, invoice_id="inv-33")["payment_method"] = "monobank_card"

    def down(invoice_id):
        raise monobank.MonobankAPIError("Timeout while connecting to Monobank")

    monkeypatch.setattr(payments_routes.monobank, "invoice_status", down)

    assert client.get("/api/payments/monobank/status/404").status_code == 404
    assert client.get("/api/payments/monobank/status/32").status_code == 404
    r = client.get("/api/payments/monobank/status/33")
    assert r.status_code == 502
    assert store.transactions == {}
