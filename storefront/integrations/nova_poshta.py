from __future__ import annotations

import logging
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from .. import config


logger = logging.getLogger(__name__)

API_URL = "https://api.novaposhta.ua/v2.0/json/"
MIN_DECLARED_COST = Decimal("200")


class NovaPoshtaError(Exception):
    pass


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=15.0)


def call(model: str, method: str, properties: Dict[str, Any]) -> List[Dict[str, Any]]:
    api_key = config.nova_poshta_api_key()
    if not api_key:
        raise NovaPoshtaError("Nova Poshta API key is not configured")

    body = {"apiKey": api_key, "modelName": model, "calledMethod": method, "methodProperties": properties}
    try:
        with _http_client() as client:
            resp = client.post(API_URL, json=body)
    except httpx.HTTPError as e:
        raise NovaPoshtaError(f"Nova Poshta is unreachable: {e}")

    try:
        data = resp.json()
    except ValueError:
        raise NovaPoshtaError(f"Nova Poshta returned HTTP {resp.status_code} without JSON")

    if not data.get("success"):
        errors = data.get("errors") or data.get("warnings") or ["unknown error"]
        logger.warning("nova poshta %s.%s failed: %s", model, method, errors)
        raise NovaPoshtaError(", ".join(str(e) for e in errors))
    return list(data.get("data") or [])


def search_settlements(name: str, limit: int = 50) -> List[Dict[str, str]]:
    data = call("Address", "searchSettlements", {"CityName": name, "Limit": str(limit), "Page": "1"})
    if not data:
        return []
    out = []
    for item in data[0].get("Addresses") or []:
        label = item.get("Present") or item.get("MainDescription") or ""
        out.append(
            {
                "value": str(item.get("MainDescription") or label),
                "label": str(label),
                "ref": str(item.get("DeliveryCity") or item.get("Ref") or ""),
            }
        )
    return out


def get_warehouses(city_ref: str, query: Optional[str] = None) -> List[Dict[str, str]]:
    props: Dict[str, Any] = {"CityRef": city_ref, "Limit": "500", "Page": "1"}
    if query:
        props["FindByString"] = query
    data = call("Address", "getWarehouses", props)
    return [
        {
            "value": str(w.get("Description") or ""),
            "label": str(w.get("Description") or ""),
            "ref": str(w.get("Ref") or ""),
        }
        for w in data
    ]


def normalize_phone(raw: Optional[str]) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("0"):
        digits = "38" + digits
    if len(digits) == 9:
        digits = "380" + digits
    return digits


def split_name(full_name: Optional[str]) -> Tuple[str, str, str]:
    parts = (full_name or "").split()
    first = parts[0] if parts else "Клієнт"
    last = parts[1] if len(parts) > 1 else "Світанок"
    middle = parts[2] if len(parts) > 2 else ""
    return first, last, middle


def declared_cost(total: Any) -> str:
    cost = max(MIN_DECLARED_COST, Decimal(str(total or 0)))
    return str(cost.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def create_recipient(full_name: str, phone: str, email: Optional[str]) -> Tuple[str, str]:
    first, last, middle = split_name(full_name)
    data = call(
        "Counterparty",
        "save",
        {
            "FirstName": first,
            "LastName": last,
            "MiddleName": middle,
            "Phone": phone,
            "Email": email or "",
            "CounterpartyType": "PrivatePerson",
            "CounterpartyProperty": "Recipient",
        },
    )
    if not data:
        raise NovaPoshtaError("Counterparty.save returned no data")
    recipient = data[0]
    contacts = (recipient.get("ContactPerson") or {}).get("data") or []
    if not recipient.get("Ref") or not contacts or not contacts[0].get("Ref"):
        raise NovaPoshtaError("Counterparty.save response has no recipient or contact ref")
    return str(recipient["Ref"]), str(contacts[0]["Ref"])


def create_waybill(order: Mapping[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    """Create an InternetDocument for a branch-to-branch order. Returns the NP document."""
    delivery = order.get("delivery_info") or {}
    city_ref = str(delivery.get("city_ref") or "").strip()
    warehouse_ref = str(delivery.get("warehouse_ref") or "").strip()
    if not city_ref:
        raise NovaPoshtaError("Delivery info has no city_ref")
    if not warehouse_ref:
        raise NovaPoshtaError("Delivery info has no warehouse_ref")

    sender = config.nova_poshta_sender()
    missing = sender.missing()
    if missing:
        raise NovaPoshtaError(f"Sender is not configured: {', '.join(missing)}")

    phone = normalize_phone(order.get("customer_phone") or delivery.get("phone"))
    if not phone:
        raise NovaPoshtaError("Customer phone is missing")

    full_name = str(order.get("customer_name") or delivery.get("full_name") or "").strip()
    recipient_ref, contact_ref = create_recipient(full_name, phone, order.get("customer_email"))

    today = today or date.today()
    payload = {
        "NewAddress": "0",
        "PayerType": "Recipient",
        "PaymentMethod": "Cash",
        "CargoType": "Parcel",
        "VolumeGeneral": "0.0004",
        "Weight": "1.0",
        "ServiceType": "WarehouseWarehouse",
        "SeatsAmount": "1",
        "Description": "Svitanok",
        "Cost": declared_cost(order.get("total_price")),
        "DateTime": today.strftime("%d.%m.%Y"),
        "CitySender": sender.city_ref,
        "Sender": sender.sender_ref,
        "SenderAddress": sender.address_ref,
        "ContactSender": sender.contact_ref,
        "SendersPhone": sender.phone,
        "CityRecipient": city_ref,
        "RecipientAddress": warehouse_ref,
        "Recipient": recipient_ref,
        "ContactRecipient": contact_ref,
        "RecipientsPhone": phone,
        "OptionsSeat": [
            {"volumetricVolume": "0.0004", "volumetricWidth": "10", "volumetricLength": "10", "volumetricHeight": "4", "weight": "1.0"}
        ],
    }
    data = call("InternetDocument", "save", payload)
    if not data or not data[0].get("IntDocNumber"):
        raise NovaPoshtaError("InternetDocument.save returned no IntDocNumber")
    doc = data[0]
    logger.info("nova poshta waybill created order=%s ttn=%s", order.get("id"), doc["IntDocNumber"])
    return doc
