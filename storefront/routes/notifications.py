import logging

import psycopg
from fastapi import APIRouter, Header, HTTPException, Request, Response

from ..db import get_conn
from ..integrations import mailer, telegram
from ..models import EmailIn, EmailOut, NotifyOut, TelegramNotifyIn
from ..ratelimit import limit
from ..security import require_admin
from ..store import orders as orders_store


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.post("/telegram", response_model=NotifyOut)
def telegram_notify(req: TelegramNotifyIn):
    """Notify the shop chat about an order. Always answers 200."""
    if req.order_id is None and not req.record:
        logger.warning("telegram notify called without order data")
        return NotifyOut(notified=False)

    order = dict(req.record or {})
    items = order.pop("items", None)
    order_id = req.order_id or order.get("id")
    try:
        if order_id is not None and (not order or items is None):
            with get_conn() as conn:
                stored = orders_store.fetch_order(conn, int(order_id))
                if stored is not None:
                    order = {**stored, **order}
                    items = orders_store.fetch_order_items(conn, int(order_id))
    except (psycopg.Error, ValueError):
        logger.exception("telegram notify could not load order=%s", order_id)

    if not order:
        return NotifyOut(notified=False)
    return NotifyOut(notified=telegram.notify(telegram.format_order_message(order, items)))


@router.post("/email", response_model=EmailOut)
@limit("default")
def send_email(
    req: EmailIn,
    request: Request,
    response: Response,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        message_id = mailer.send_email(req.to, req.subject, req.html)
    except mailer.EmailNotConfigured:
        raise HTTPException(status_code=500, detail="Email service not configured")
    except mailer.EmailDeliveryError:
        raise HTTPException(status_code=502, detail="Failed to send email")
    return EmailOut(id=message_id)
