from __future__ import annotations

import base64
import binascii
import logging
import threading
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .. import config


logger = logging.getLogger(__name__)

PUBKEY_TTL_SECONDS = 3600

STATUS_MAP: Dict[str, str] = {
    "success": "paid",
    "failure": "failed",
    "expired": "failed",
    "reversed": "refunded",
    "processing": "processing",
    "hold": "processing",
    "created": "pending",
}


class MonobankAPIError(Exception):
    pass


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=30.0)


def map_status(provider_status: Optional[str]) -> str:
    return STATUS_MAP.get((provider_status or "").strip().lower(), "pending")


def to_kopecks(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_modified_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def api_request(method: str, endpoint: str, json_payload: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    token = config.monobank_token()
    if not token:
        raise MonobankAPIError("Monobank API token is not configured")

    url = f"{config.monobank_api_base()}{endpoint}"
    headers = {"X-Token": token}
    try:
        with _http_client() as client:
            resp = client.request(method.upper(), url, json=json_payload, params=params, headers=headers)
    except httpx.TimeoutException:
        raise MonobankAPIError("Timeout while connecting to Monobank")
    except httpx.HTTPError as e:
        raise MonobankAPIError(f"Monobank connection error: {e}")

    logger.info("monobank %s %s status=%s", method.upper(), endpoint, resp.status_code)
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code >= 400:
        error_msg = data.get("errText") or data.get("errorDescription") or resp.text or "Unknown error"
        raise MonobankAPIError(f"Monobank API error: {error_msg}")
    return data


def basket_from_items(items: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    basket = []
    for item in items:
        qty = int(item.get("quantity") or 1)
        price = to_kopecks(item.get("price_at_purchase") or 0)
        basket.append(
            {
                "name": str(item.get("product_name") or "Товар")[:128],
                "qty": qty,
                "sum": price * qty,
                "code": str(item.get("product_id") or ""),
            }
        )
    return basket


def create_invoice(order_id: int, amount: Any, items: Iterable[Mapping[str, Any]] = (), redirect_url: Optional[str] = None) -> Dict[str, Any]:
    site = config.site_url()
    payload = {
        "amount": to_kopecks(amount),
        "ccy": config.MONOBANK_CCY,
        "merchantPaymInfo": {
            "reference": str(order_id),
            "destination": f"Оплата замовлення #{order_id}",
            "basketOrder": basket_from_items(items),
        },
        "redirectUrl": redirect_url or f"{site}/order-success?order_id={order_id}",
        "webHookUrl": f"{site}/api/payments/monobank/webhook",
        "validity": 24 * 3600,
        "paymentType": "debit",
    }
    data = api_request("POST", "/api/merchant/invoice/create", json_payload=payload)
    if not data.get("invoiceId") or not data.get("pageUrl"):
        raise MonobankAPIError("Monobank response has no invoiceId/pageUrl")
    return data


def invoice_status(invoice_id: str) -> Dict[str, Any]:
    return api_request("GET", "/api/merchant/invoice/status", params={"invoiceId": invoice_id})


class PublicKeyCache:
    def __init__(self, ttl_seconds: int = PUBKEY_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._key: Optional[str] = None
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> str:
        configured = config.monobank_pubkey()
        if configured:
            return configured
        with self._lock:
            if self._key and time.time() - self._fetched_at < self.ttl_seconds:
                return self._key
        data = api_request("GET", "/api/merchant/pubkey")
        key = str(data.get("key") or "")
        if not key:
            raise MonobankAPIError("Monobank returned an empty public key")
        with self._lock:
            self._key = key
            self._fetched_at = time.time()
        return key

    def invalidate(self) -> None:
        with self._lock:
            self._key = None
            self._fetched_at = 0.0


pubkey_cache = PublicKeyCache()


def verify_with_key(body: bytes, x_sign: str, pubkey_b64: str) -> bool:
    """Check an X-Sign header (base64 ECDSA/SHA-256) against a base64 PEM key."""
    try:
        pem = base64.b64decode(pubkey_b64)
        public_key = serialization.load_pem_public_key(pem)
        signature = base64.b64decode(x_sign)
    except (binascii.Error, ValueError, TypeError):
        logger.warning("monobank signature: undecodable key or signature")
        return False
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        logger.warning("monobank signature: unexpected key type %s", type(public_key).__name__)
        return False
    try:
        public_key.verify(signature, body, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


def verify_signature(body: bytes, x_sign: Optional[str]) -> bool:
    if not x_sign:
        logger.warning("monobank webhook without X-Sign header")
        return False
    try:
        key = pubkey_cache.get()
    except MonobankAPIError:
        logger.exception("monobank public key unavailable")
        return False
    if verify_with_key(body, x_sign, key):
        return True
    if config.monobank_pubkey():
        return False
    # The key may have been rotated since it was cached.
    pubkey_cache.invalidate()
    try:
        key = pubkey_cache.get()
    except MonobankAPIError:
        logger.exception("monobank public key refetch failed")
        return False
    return verify_with_key(body, x_sign, key)
