from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from fastapi import HTTPException

from .. import config
from ..integrations import telegram
from ..store import orders as orders_store
from . import liqpay, monobank


logger = logging.getLogger(__name__)


def order_description(order: Mapping[str, Any]) -> str:
    return f"Оплата замовлення #{order['id']} в магазині Svitanok"


def liqpay_form(order: Mapping[str, Any]) -> Dict[str, str]:
    return liqpay.build_checkout(
        order_id=int(order["id"]),
        amount=Decimal(str(order["total_price"])),
        description=order_description(order),
    )


def ensure_payable(order: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["payment_status"] == "paid":
        raise HTTPException(status_code=409, detail="Order is already paid")
    if order["status"] == "cancelled":
        raise HTTPException(status_code=409, detail="Order is cancelled")
    return order


def start_monobank_invoice(conn, order: Mapping[str, Any], items: List[Mapping[str, Any]], redirect_url: Optional[str] = None) -> Dict[str, Any]:
    data = monobank.create_invoice(int(order["id"]), order["total_price"], items, redirect_url)
    amount = Decimal(str(order["total_price"]))
    orders_store.attach_invoice(
        conn,
        int(order["id"]),
        str(data["invoiceId"]),
        "monobank_card",
        {"invoiceId": data["invoiceId"], "pageUrl": data["pageUrl"], "amount": str(amount)},
    )
    logger.info("monobank invoice created order=%s invoice=%s", order["id"], data["invoiceId"])
    return {"invoice_id": str(data["invoiceId"]), "page_url": str(data["pageUrl"]), "amount": amount}


def validate_parts_count(parts_count: Optional[int]) -> int:
    if parts_count is None or not (config.PARTS_COUNT_MIN <= int(parts_count) <= config.PARTS_COUNT_MAX):
        raise HTTPException(
            status_code=400,
            detail=f"Parts count must be between {config.PARTS_COUNT_MIN} and {config.PARTS_COUNT_MAX}",
        )
    return int(parts_count)


def request_parts(conn, order: Mapping[str, Any], parts_count: int) -> Dict[str, Any]:
    parts_count = validate_parts_count(parts_count)
    request_id = f"parts_{order['id']}_{int(time.time())}"
    parts = {
        "request_id": request_id,
        "count": parts_count,
        "status": "pending_signature",
        "amount": str(Decimal(str(order["total_price"]))),
        "requested_at": datetime.now(timezone.utc).isoformat(),
    }
    orders_store.attach_invoice(conn, int(order["id"]), request_id, "monobank_parts", {"parts": parts})
    logger.info("monobank parts requested order=%s count=%s", order["id"], parts_count)
    return parts


def notify_paid(conn, order_id: int, provider: str) -> bool:
    order = orders_store.fetch_order(conn, order_id)
    if order is None:
        return False
    return telegram.notify(telegram.format_payment_message(order, provider))
