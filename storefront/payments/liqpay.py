"""LiqPay checkout form signing and callback decoding.

LiqPay signs ``data`` (base64 of a JSON object) as
``base64(sha1(private_key + data + private_key))``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, Optional

from .. import config


API_VERSION = "3"

STATUS_MAP: Dict[str, str] = {
    "success": "paid",
    "sandbox": "paid",
    "failure": "failed",
    "error": "failed",
    "wait_accept": "processing",
    "wait_secure": "processing",
    "processing": "processing",
    "prepared": "processing",
    "3ds_verify": "processing",
    "otp_verify": "processing",
    "cvv_verify": "processing",
    "reversed": "refunded",
    "refund": "refunded",
}


class LiqPayError(Exception):
    pass


def encode_data(params: Dict[str, Any]) -> str:
    raw = json.dumps(params, ensure_ascii=False, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_data(data: str) -> Optional[Dict[str, Any]]:
    try:
        decoded = json.loads(base64.b64decode(data, validate=False).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(decoded, dict):
        return None
    return decoded


def sign(data: str, private_key: str) -> str:
    digest = hashlib.sha1((private_key + data + private_key).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(data: str, signature: str, private_key: str) -> bool:
    if not data or not signature or not private_key:
        return False
    expected = sign(data, private_key)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8", "replace"))


def map_status(provider_status: Optional[str]) -> str:
    return STATUS_MAP.get((provider_status or "").strip().lower(), "pending")


def _amount_str(amount: Decimal) -> str:
    return format(Decimal(amount).quantize(Decimal("0.01")), "f")


def build_checkout(order_id: int, amount: Decimal, description: str, currency: str = config.CURRENCY) -> Dict[str, str]:
    """Return the ``{data, signature}`` pair the browser posts to LiqPay."""
    public_key, private_key = config.liqpay_keys()
    if not public_key or not private_key:
        raise LiqPayError("LiqPay keys are not configured")

    site = config.site_url()
    params = {
        "public_key": public_key,
        "version": API_VERSION,
        "action": "pay",
        "amount": _amount_str(amount),
        "currency": currency,
        "description": description,
        "order_id": str(order_id),
        "sandbox": "1" if config.liqpay_sandbox() else "0",
        "result_url": f"{site}/order-success?order_id={order_id}",
        "server_url": f"{site}/api/payments/liqpay/callback",
    }
    data = encode_data(params)
    return {"data": data, "signature": sign(data, private_key)}


def transaction_key(payload: Dict[str, Any]) -> Optional[str]:
    """Idempotency key for one status of one LiqPay transaction."""
    status = str(payload.get("status") or "").strip().lower() or "unknown"
    for field in ("transaction_id", "liqpay_order_id", "payment_id"):
        value = payload.get(field)
        if value not in (None, ""):
            return f"liqpay:{value}:{status}"
    return None


def parse_order_id(payload: Dict[str, Any]) -> Optional[int]:
    try:
        order_id = int(str(payload.get("order_id") or "").strip())
    except ValueError:
        return None
    return order_id if order_id > 0 else None
