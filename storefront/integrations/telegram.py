from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

import httpx

from .. import config


logger = logging.getLogger(__name__)

DELIVERY_LABELS = {
    "nova_poshta_dept": "Нова Пошта (відділення)",
    "nova_poshta_courier": "Нова Пошта (кур'єр)",
    "ukrposhta": "Укрпошта",
    "self_pickup": "Самовивіз",
    "quick_order": "Швидке замовлення",
}

PAYMENT_LABELS = {
    "cash": "Накладений платіж",
    "liqpay": "LiqPay",
    "monobank_card": "Monobank (картка)",
    "monobank_parts": "Monobank (частинами)",
}


class TelegramError(Exception):
    pass


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=10.0)


def _money(value: Any) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def format_order_message(order: Mapping[str, Any], items: Optional[Iterable[Mapping[str, Any]]] = None) -> str:
    lines = [f"📦 НОВЕ ЗАМОВЛЕННЯ #{order.get('id') or 'N/A'}", ""]
    lines.append(f"👤 Клієнт: {order.get('customer_name') or 'N/A'}")
    lines.append(f"📞 Телефон: {order.get('customer_phone') or 'N/A'}")
    lines.append(f"📧 Email: {order.get('customer_email') or 'N/A'}")
    method = order.get("delivery_method") or ""
    lines.append(f"🚚 Доставка: {DELIVERY_LABELS.get(method, method)}")
    payment = order.get("payment_method") or ""
    if payment:
        lines.append(f"💳 Оплата: {PAYMENT_LABELS.get(payment, payment)}")

    delivery = order.get("delivery_info") or {}
    if delivery.get("city"):
        lines.append(f"🏙️ Місто: {delivery['city']}")
    if delivery.get("warehouse"):
        lines.append(f"🏢 Відділення: {delivery['warehouse']}")
    if delivery.get("address"):
        lines.append(f"🏠 Адреса: {delivery['address']}")
    if delivery.get("comment"):
        lines.append(f"💬 Коментар: {delivery['comment']}")

    if order.get("promo_code"):
        lines.append(f"🏷️ Промокод: {order['promo_code']} (-{_money(order.get('discount_amount'))} ₴)")
    lines.append(f"💰 Сума: {_money(order.get('total_price'))} ₴")
    lines.append("")
    lines.append("🛒 Товари:")

    items = list(items or [])
    if not items:
        lines.append("Товари відсутні")
    for idx, item in enumerate(items, start=1):
        name = item.get("product_name") or item.get("name") or "Невідомий товар"
        qty = item.get("quantity") or 1
        price = item.get("price_at_purchase") if item.get("price_at_purchase") is not None else item.get("price")
        lines.append(f"{idx}. {name} (x{qty}) - {_money(price)} ₴")
    return "\n".join(lines)


def format_payment_message(order: Mapping[str, Any], provider: str) -> str:
    return (
        f"✅ ОПЛАТА ОТРИМАНА #{order.get('id')}\n"
        f"Провайдер: {provider}\n"
        f"Сума: {_money(order.get('total_price'))} ₴"
    )


def send_message(text: str) -> None:
    token, chat_id = config.telegram_settings()
    if not token or not chat_id:
        raise TelegramError("Telegram bot is not configured")

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    try:
        with _http_client() as client:
            resp = client.post(url, json={"chat_id": chat_id, "text": text})
    except httpx.HTTPError as e:
        raise TelegramError(f"Telegram is unreachable: {e}")

    try:
        result = resp.json()
    except ValueError:
        result = {}
    if resp.status_code >= 400 or not result.get("ok"):
        raise TelegramError(f"Telegram sendMessage failed: {resp.status_code} {result.get('description') or ''}".strip())


def notify(text: str) -> bool:
    """Send without raising; a failed notification must never fail the caller."""
    try:
        send_message(text)
        return True
    except TelegramError as e:
        logger.warning("telegram notification not sent: %s", e)
        return False
