from __future__ import annotations

import html
import logging
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

import httpx

from .. import config


logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SITE_NAME = "Svitanok"


class EmailDeliveryError(Exception):
    pass


class EmailNotConfigured(EmailDeliveryError):
    pass


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=10.0)


def send_email(to: str, subject: str, html_body: str) -> Optional[str]:
    api_key, from_email = config.resend_settings()
    if not api_key:
        raise EmailNotConfigured("Email service not configured")
    from_email = from_email or "noreply@svitanok.com"

    payload = {"from": f"{SITE_NAME} <{from_email}>", "to": to, "subject": subject, "html": html_body}
    try:
        with _http_client() as client:
            resp = client.post(RESEND_URL, headers={"Authorization": f"Bearer {api_key}"}, json=payload)
    except httpx.HTTPError as e:
        logger.exception("resend HTTP error")
        raise EmailDeliveryError(f"Resend is unreachable: {e}")

    if resp.status_code not in (200, 201, 202):
        logger.error("resend send failed status=%s body=%s", resp.status_code, resp.text)
        raise EmailDeliveryError("Failed to send email")
    try:
        return resp.json().get("id")
    except ValueError:
        return None


def render_order_confirmation(order: Mapping[str, Any], items: Iterable[Mapping[str, Any]]) -> str:
    rows = []
    for item in items:
        name = html.escape(str(item.get("product_name") or ""))
        qty = int(item.get("quantity") or 1)
        price = Decimal(str(item.get("price_at_purchase") or 0))
        rows.append(f"<tr><td>{name}</td><td>{qty}</td><td>{price:.2f} ₴</td></tr>")

    total = Decimal(str(order.get("total_price") or 0))
    discount = Decimal(str(order.get("discount_amount") or 0))
    discount_row = f"<p>Знижка: -{discount:.2f} ₴</p>" if discount > 0 else ""
    return (
        f"<h2>Дякуємо за замовлення #{order.get('id')}!</h2>"
        f"<p>{html.escape(str(order.get('customer_name') or ''))}, ми отримали ваше замовлення "
        "і зв'яжемося з вами найближчим часом.</p>"
        "<table><thead><tr><th>Товар</th><th>К-сть</th><th>Ціна</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody></table>"
        f"{discount_row}"
        f"<p><strong>Разом: {total:.2f} ₴</strong></p>"
        f"<p><a href=\"{config.site_url()}\">{SITE_NAME}</a></p>"
    )


def send_order_confirmation(order: Mapping[str, Any], items: Iterable[Mapping[str, Any]]) -> bool:
    to = (order.get("customer_email") or "").strip()
    if not to:
        return False
    try:
        send_email(to, f"Замовлення #{order.get('id')} прийнято", render_order_confirmation(order, items))
        return True
    except EmailDeliveryError as e:
        logger.warning("order confirmation email not sent order=%s: %s", order.get("id"), e)
        return False
