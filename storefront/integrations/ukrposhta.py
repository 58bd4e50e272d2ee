from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .. import config


logger = logging.getLogger(__name__)


class UkrposhtaError(Exception):
    pass


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=20.0)


def request(method: str, endpoint: str, body: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    bearer, counterparty = config.ukrposhta_tokens()
    if not bearer or not counterparty:
        raise UkrposhtaError("Ukrposhta API tokens are not configured")

    url = f"{config.ukrposhta_base_url()}{endpoint}"
    try:
        with _http_client() as client:
            resp = client.request(method, url, json=body, params=params, headers={"Authorization": f"Bearer {bearer}"})
    except httpx.HTTPError as e:
        raise UkrposhtaError(f"Ukrposhta is unreachable: {e}")

    if resp.status_code >= 400:
        logger.warning("ukrposhta %s %s status=%s body=%s", method, endpoint, resp.status_code, resp.text[:500])
        raise UkrposhtaError(f"Ukrposhta API error: {resp.status_code} - {resp.text[:200]}")
    try:
        return resp.json()
    except ValueError:
        raise UkrposhtaError("Ukrposhta returned a non-JSON response")


def search_cities(query: str) -> List[Dict[str, str]]:
    data = request("GET", "/addresses/settlements", params={"query": query})
    return [
        {"value": str(item.get("id")), "label": f"{item.get('name')}, {item.get('region')}", "ref": str(item.get("id"))}
        for item in data.get("data") or []
    ]


def get_warehouses(city_id: str) -> List[Dict[str, str]]:
    data = request("GET", "/warehouses", params={"settlement_id": city_id})
    return [
        {"value": str(item.get("id")), "label": f"{item.get('postcode')} - {item.get('name')}", "ref": str(item.get("id"))}
        for item in data.get("data") or []
    ]


def create_shipment(order: Mapping[str, Any], items: List[Mapping[str, Any]], weight: float = 1.0) -> Dict[str, Any]:
    delivery = order.get("delivery_info") or {}
    if not order.get("customer_name") or not order.get("customer_phone") or not delivery.get("city") or not delivery.get("warehouse"):
        raise UkrposhtaError("Missing required delivery information")

    sender_ref, sender_contact_ref = config.ukrposhta_sender()
    if not sender_ref or not sender_contact_ref:
        raise UkrposhtaError("Sender information is not configured")
    _, counterparty = config.ukrposhta_tokens()

    address = request(
        "POST",
        "/addresses",
        body={
            "counterparty_token": counterparty,
            "type": "INDIVIDUAL",
            "country": "UA",
            "city": delivery.get("city"),
            "postcode": delivery.get("postcode") or "",
            "street": delivery.get("address") or "",
        },
    )
    address_id = (address.get("data") or {}).get("id")

    name_parts = str(order["customer_name"]).split()
    client = request(
        "POST",
        "/clients",
        body={
            "counterparty_token": counterparty,
            "first_name": name_parts[0],
            "last_name": " ".join(name_parts[1:]) or "Customer",
            "phone": order["customer_phone"],
            "email": order.get("customer_email") or "",
            "address_id": address_id,
        },
    )
    client_id = (client.get("data") or {}).get("id")

    contents = ", ".join(str(i.get("product_name")) for i in items if i.get("product_name")) or "Beauty products"
    shipment = request(
        "POST",
        "/shipments",
        body={
            "counterparty_token": counterparty,
            "sender_address_id": sender_ref,
            "recipient_client_id": client_id,
            "recipient_address_id": address_id,
            "weight": weight,
            "declared_price": float(order.get("total_price") or 0),
            "delivery_type": "W2W",
            "description": "Beauty and skincare products",
            "contents": contents[:255],
        },
    )
    data = shipment.get("data") or {}
    if not data.get("tracking_number"):
        raise UkrposhtaError("Shipment response has no tracking number")
    logger.info("ukrposhta shipment created order=%s ttn=%s", order.get("id"), data["tracking_number"])
    return data
