import json
from datetime import date

import httpx
import pytest

from storefront.integrations import mailer, meta_capi, nova_poshta, telegram, ukrposhta


def _use_transport(monkeypatch, module, handler):
    monkeypatch.setattr(module, "_http_client", lambda: httpx.Client(transport=httpx.MockTransport(handler)))


NP_SENDER = {
    "NP_SENDER_REF": "sender-ref",
    "NP_CITY_SENDER_REF": "city-sender",
    "NP_ADDRESS_SENDER_REF": "addr-sender",
    "NP_CONTACT_PERSON_REF": "contact-sender",
    "NP_SENDERS_PHONE": "380441234567",
}


@pytest.fixture
def np_env(monkeypatch):
    monkeypatch.setenv("NOVA_POSHTA_API_KEY", "np-key")
    for k, v in NP_SENDER.items():
        monkeypatch.setenv(k, v)


def test_nova_poshta_settlement_search(monkeypatch, np_env):
    def handler(request):
        body = json.loads(request.content)
        assert body["apiKey"] == "np-key"
        assert body["calledMethod"] == "searchSettlements"
        assert body["methodProperties"]["CityName"] == "Льв"
        return httpx.Response(
            200,
            json={"success": True, "data": [{"Addresses": [{"Present": "м. Львів, Львівська обл.", "MainDescription": "Львів", "DeliveryCity": "city-lviv"}]}]},
        )

    _use_transport(monkeypatch, nova_poshta, handler)
    assert nova_poshta.search_settlements("Льв") == [{"value": "Львів", "label": "м. Львів, Львівська обл.", "ref": "city-lviv"}]


def test_nova_poshta_error_list_is_raised(monkeypatch, np_env):
    _use_transport(monkeypatch, nova_poshta, lambda r: httpx.Response(200, json={"success": False, "errors": ["API key expired"]}))
    with pytest.raises(nova_poshta.NovaPoshtaError, match="API key expired"):
        nova_poshta.get_warehouses("city-1")


def test_nova_poshta_without_key(monkeypatch):
    monkeypatch.delenv("NOVA_POSHTA_API_KEY", raising=False)
    with pytest.raises(nova_poshta.NovaPoshtaError):
        nova_poshta.call("Address", "getWarehouses", {})


def test_phone_name_and_declared_cost_helpers():
    assert nova_poshta.normalize_phone("+38 (067) 123-45-67") == "380671234567"
    assert nova_poshta.normalize_phone("0671234567") == "380671234567"
    assert nova_poshta.split_name("Олена Коваль") == ("Олена", "Коваль", "")
    assert nova_poshta.split_name("") == ("Клієнт", "Світанок", "")
    assert nova_poshta.declared_cost("150.40") == "200"
    assert nova_poshta.declared_cost("1234.50") == "1235"


def test_create_waybill(monkeypatch, np_env):
    calls = []

    def handler(request):
        body = json.loads(request.content)
        calls.append(body)
        if body["modelName"] == "Counterparty":
            return httpx.Response(200, json={"success": True, "data": [{"Ref": "rec-1", "ContactPerson": {"data": [{"Ref": "cp-1"}]}}]})
        return httpx.Response(200, json={"success": True, "data": [{"IntDocNumber": "20450000000001", "CostOnSite": 80, "EstimatedDeliveryDate": "05.05.2025"}]})

    _use_transport(monkeypatch, nova_poshta, handler)
    order = {
        "id": 5,
        "customer_name": "Олена Коваль",
        "customer_phone": "0501112233",
        "total_price": "950.00",
        "delivery_info": {"city_ref": "city-kyiv", "warehouse_ref": "wh-7"},
    }
    doc = nova_poshta.create_waybill(order, today=date(2025, 5, 2))

    assert doc["IntDocNumber"] == "20450000000001"
    props = calls[1]["methodProperties"]
    assert calls[1]["modelName"] == "InternetDocument"
    assert props["Recipient"] == "rec-1"
    assert props["ContactRecipient"] == "cp-1"
    assert props["CityRecipient"] == "city-kyiv"
    assert props["RecipientAddress"] == "wh-7"
    assert props["RecipientsPhone"] == "380501112233"
    assert props["Cost"] == "950"
    assert props["DateTime"] == "02.05.2025"
    assert props["Sender"] == "sender-ref"


def test_create_waybill_requires_branch_and_sender(monkeypatch, np_env):
    with pytest.raises(nova_poshta.NovaPoshtaError, match="warehouse_ref"):
        nova_poshta.create_waybill({"delivery_info": {"city_ref": "c"}})

    monkeypatch.delenv("NP_SENDERS_PHONE")
    with pytest.raises(nova_poshta.NovaPoshtaError, match="NP_SENDERS_PHONE"):
        nova_poshta.create_waybill({"delivery_info": {"city_ref": "c", "warehouse_ref": "w"}})


def test_ukrposhta_shipment(monkeypatch):
    monkeypatch.setenv("UKRPOSHTA_BEARER_TOKEN", "bearer")
    monkeypatch.setenv("UKRPOSHTA_COUNTERPARTY_TOKEN", "cp-token")
    monkeypatch.setenv("UKRPOSHTA_SENDER_REF", "sender-addr")
    monkeypatch.setenv("UKRPOSHTA_SENDER_CONTACT_REF", "sender-contact")
    monkeypatch.setenv("UKRPOSHTA_DEBUG", "true")
    seen = {}

    def handler(request):
        assert request.headers["Authorization"] == "Bearer bearer"
        assert request.url.host == "dev.ukrposhta.ua"
        path = request.url.path.rsplit("/", 1)[-1]
        seen[path] = json.loads(request.content)
        if path == "addresses":
            return httpx.Response(200, json={"data": {"id": 11}})
        if path == "clients":
            return httpx.Response(200, json={"data": {"id": 22}})
        return httpx.Response(200, json={"data": {"tracking_number": "0500012345678"}})

    _use_transport(monkeypatch, ukrposhta, handler)
    order = {
        "id": 9,
        "customer_name": "Іван Петренко",
        "customer_phone": "380671234567",
        "total_price": "1200.00",
        "delivery_info": {"city": "Київ", "warehouse": "01001", "postcode": "01001"},
    }
    data = ukrposhta.create_shipment(order, [{"product_name": "Крем"}], weight=0.5)

    assert data["tracking_number"] == "0500012345678"
    assert seen["clients"]["last_name"] == "Петренко"
    assert seen["shipments"]["recipient_client_id"] == 22
    assert seen["shipments"]["recipient_address_id"] == 11
    assert seen["shipments"]["weight"] == 0.5
    assert seen["shipments"]["contents"] == "Крем"


def test_ukrposhta_http_error(monkeypatch):
    monkeypatch.setenv("UKRPOSHTA_BEARER_TOKEN", "bearer")
    monkeypatch.setenv("UKRPOSHTA_COUNTERPARTY_TOKEN", "cp-token")
    _use_transport(monkeypatch, ukrposhta, lambda r: httpx.Response(403, text="forbidden"))
    with pytest.raises(ukrposhta.UkrposhtaError, match="403"):
        ukrposhta.search_cities("Київ")


def test_telegram_order_message():
    order = {
        "id": 3,
        "customer_name": "Олена",
        "customer_phone": "380501112233",
        "delivery_method": "nova_poshta_dept",
        "payment_method": "liqpay",
        "delivery_info": {"city": "Київ", "warehouse": "Відділення №1"},
        "promo_code": "SPRING10",
        "discount_amount": "130",
        "total_price": "1170",
    }
    text = telegram.format_order_message(order, [{"product_name": "Сироватка", "quantity": 2, "price_at_purchase": "650"}])
    assert "НОВЕ ЗАМОВЛЕННЯ #3" in text
    assert "Нова Пошта (відділення)" in text
    assert "SPRING10 (-130.00 ₴)" in text
    assert "1. Сироватка (x2) - 650.00 ₴" in text
    assert "Товари відсутні" in telegram.format_order_message({"id": 4})


def test_telegram_notify_never_raises(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    assert telegram.notify("hello") is False

    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "bot")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    _use_transport(monkeypatch, telegram, lambda r: httpx.Response(200, json={"ok": True}))
    assert telegram.notify("hello") is True

    _use_transport(monkeypatch, telegram, lambda r: httpx.Response(400, json={"ok": False, "description": "chat not found"}))
    assert telegram.notify("hello") is False


def test_mailer_not_configured(monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    with pytest.raises(mailer.EmailNotConfigured):
        mailer.send_email("a@b.c", "s", "<p>x</p>")
    assert mailer.send_order_confirmation({"id": 1, "customer_email": "a@b.c"}, []) is False
    assert mailer.send_order_confirmation({"id": 1, "customer_email": None}, []) is False


def test_mailer_sends_escaped_confirmation(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_key")
    monkeypatch.setenv("FROM_EMAIL", "shop@svitanok.com")
    sent = {}

    def handler(request):
        sent.update(json.loads(request.content))
        return httpx.Response(200, json={"id": "email-1"})

    _use_transport(monkeypatch, mailer, handler)
    order = {"id": 7, "customer_name": "<b>Олена</b>", "customer_email": "olena@example.com", "total_price": "500"}
    assert mailer.send_order_confirmation(order, [{"product_name": "Крем & тонер", "quantity": 1, "price_at_purchase": "500"}]) is True
    assert sent["from"] == "Svitanok <shop@svitanok.com>"
    assert "&lt;b&gt;Олена&lt;/b&gt;" in sent["html"]
    assert "Крем &amp; тонер" in sent["html"]


def test_capi_hashing_and_user_data():
    assert meta_capi.hash_pii(" Olena@Example.com ") == meta_capi.hash_pii("olena@example.com")
    assert meta_capi.hash_pii("") is None
    data = meta_capi.build_user_data({"email": "a@b.c", "fbp": "fb.1.1"}, client_user_agent="UA", client_ip="1.1.1.1")
    assert data["em"] == [meta_capi.hash_pii("a@b.c")]
    assert data["client_ip_address"] == "1.1.1.1"
    assert data["fbp"] == "fb.1.1"
    assert "ph" not in data


def test_capi_test_mode_sends_nothing(monkeypatch):
    monkeypatch.delenv("FB_PIXEL_ID", raising=False)
    monkeypatch.delenv("VITE_FB_PIXEL_ID", raising=False)
    monkeypatch.setattr(meta_capi, "_http_client", lambda: pytest.fail("no request expected"))
    result = meta_capi.send_events([meta_capi.build_event("Purchase", {}, {})])
    assert result == {"test_mode": True, "events_received": 1}


@pytest.fixture
def capi_live(monkeypatch):
    monkeypatch.setenv("FB_PIXEL_ID", "123456")
    monkeypatch.setenv("META_CAPI_ACCESS_TOKEN", "real-token")
    sleeps = []
    monkeypatch.setattr(meta_capi, "_sleep", sleeps.append)
    return sleeps


def test_capi_retries_transient_errors(monkeypatch, capi_live):
    responses = [httpx.Response(500, json={"error": {"code": 2}}), httpx.Response(200, json={"events_received": 1})]
    _use_transport(monkeypatch, meta_capi, lambda r: responses.pop(0))
    assert meta_capi.send_events([meta_capi.build_event("Lead", {}, {})]) == {"events_received": 1}
    assert capi_live == [1]


def test_capi_does_not_retry_invalid_token(monkeypatch, capi_live):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"code": 190, "message": "Invalid OAuth access token"}})

    _use_transport(monkeypatch, meta_capi, handler)
    with pytest.raises(meta_capi.ConversionsAPIError) as ei:
        meta_capi.send_events([meta_capi.build_event("Lead", {}, {})])
    assert len(calls) == 1
    assert ei.value.details["error"]["code"] == 190
    assert capi_live == []
