import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

import psycopg
from fastapi import APIRouter, Header, HTTPException, Request, Response
from starlette.concurrency import run_in_threadpool

from .. import config
from ..db import SCHEMA_ERRORS, database_unavailable, get_conn, schema_missing
from ..models import (
    LiqPayFormOut,
    LiqPaySignIn,
    MonobankInvoiceIn,
    MonobankInvoiceOut,
    MonobankPartsIn,
    MonobankPartsOut,
    PaymentStatusOut,
    WebhookAckOut,
)
from ..payments import liqpay, monobank, service
from ..payments.reconcile import ALREADY_PROCESSED, STALE, PaymentEvent, ReconcileResult, apply_payment_event
from ..ratelimit import limit
from ..store import orders as orders_store


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _ack(result: ReconcileResult) -> WebhookAckOut:
    if result.outcome == ALREADY_PROCESSED:
        return WebhookAckOut(message="Transaction already processed")
    if result.outcome == STALE:
        return WebhookAckOut(message="Outdated event ignored", order_id=result.order_id, payment_status=result.payment_status)
    return WebhookAckOut(message="Payment processed", order_id=result.order_id, payment_status=result.payment_status)


def _reconcile(event: PaymentEvent) -> ReconcileResult:
    try:
        with get_conn() as conn:
            result = apply_payment_event(conn, event)
    except psycopg.Error:
        logger.exception("payment webhook database error tx=%s", event.transaction_id)
        raise HTTPException(status_code=500, detail="Failed to update order")

    if result.became_paid:
        try:
            with get_conn() as conn:
                service.notify_paid(conn, int(result.order_id), event.provider)
        except psycopg.Error:
            logger.exception("paid notification skipped order=%s", result.order_id)
    return result


@router.post("/liqpay/sign", response_model=LiqPayFormOut)
@limit("payment")
def liqpay_sign(req: LiqPaySignIn, request: Request, response: Response):
    try:
        with get_conn() as conn:
            order = service.ensure_payable(orders_store.fetch_order(conn, req.order_id))
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    try:
        form = service.liqpay_form(order)
    except liqpay.LiqPayError:
        raise HTTPException(status_code=500, detail="LiqPay keys are not configured")
    return LiqPayFormOut(**form)


def _parse_callback_body(body: bytes, content_type: str) -> Dict[str, str]:
    text = body.decode("utf-8", errors="replace")
    if "application/json" in content_type:
        try:
            parsed = json.loads(text or "{}")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(parsed, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        return {k: str(v) for k, v in parsed.items() if v is not None}
    form = parse_qs(text, keep_blank_values=False)
    return {k: v[0] for k, v in form.items() if v}


def handle_liqpay_callback(fields: Dict[str, str]) -> WebhookAckOut:
    data = fields.get("data")
    signature = fields.get("signature")
    if not data or not signature:
        raise HTTPException(status_code=400, detail="Missing data or signature")

    _, private_key = config.liqpay_keys()
    if not private_key:
        logger.error("liqpay callback received but LIQPAY_PRIVATE_KEY is not set")
        raise HTTPException(status_code=500, detail="Server configuration error")

    if not liqpay.verify_signature(data, signature, private_key):
        logger.warning("liqpay callback with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = liqpay.decode_data(data)
    if payload is None:
        raise HTTPException(status_code=400, detail="Invalid data format")

    order_id = liqpay.parse_order_id(payload)
    if order_id is None:
        raise HTTPException(status_code=400, detail="Invalid order_id")

    transaction_id = liqpay.transaction_key(payload)
    if transaction_id is None:
        raise HTTPException(status_code=400, detail="Missing transaction id")

    provider_status = str(payload.get("status") or "")
    logger.info("liqpay callback order=%s status=%s tx=%s", order_id, provider_status, transaction_id)
    event = PaymentEvent(
        provider="liqpay",
        transaction_id=transaction_id,
        status=liqpay.map_status(provider_status),
        provider_status=provider_status,
        order_id=order_id,
        amount=_decimal(payload.get("amount")),
        currency=str(payload.get("currency") or config.CURRENCY),
        payload=payload,
    )
    return _ack(_reconcile(event))


@router.post("/liqpay/callback", response_model=WebhookAckOut)
@limit("payment")
async def liqpay_callback(request: Request, response: Response):
    body = await request.body()
    fields = _parse_callback_body(body, request.headers.get("content-type", ""))
    return await run_in_threadpool(handle_liqpay_callback, fields)


@router.post("/monobank/invoice", response_model=MonobankInvoiceOut)
@limit("payment")
def monobank_invoice(req: MonobankInvoiceIn, request: Request, response: Response):
    try:
        with get_conn() as conn:
            order = service.ensure_payable(orders_store.fetch_order(conn, req.order_id))
            items = orders_store.fetch_order_items(conn, req.order_id)
            invoice = service.start_monobank_invoice(conn, order, items, req.redirect_url)
    except monobank.MonobankAPIError as e:
        logger.error("monobank invoice failed order=%s: %s", req.order_id, e)
        raise HTTPException(status_code=502, detail=str(e))
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    return MonobankInvoiceOut(
        order_id=req.order_id,
        invoice_id=invoice["invoice_id"],
        page_url=invoice["page_url"],
        amount=float(invoice["amount"]),
    )


@router.post("/monobank/parts", response_model=MonobankPartsOut)
@limit("payment")
def monobank_parts(req: MonobankPartsIn, request: Request, response: Response):
    service.validate_parts_count(req.parts_count)
    try:
        with get_conn() as conn:
            order = service.ensure_payable(orders_store.fetch_order(conn, req.order_id))
            parts = service.request_parts(conn, order, req.parts_count)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    return MonobankPartsOut(
        order_id=req.order_id,
        request_id=parts["request_id"],
        parts_count=parts["count"],
        status=parts["status"],
        amount=float(parts["amount"]),
    )


@router.get("/monobank/parts/{order_id}", response_model=MonobankPartsOut)
def monobank_parts_status(order_id: int):
    try:
        with get_conn() as conn:
            order = orders_store.fetch_order(conn, order_id)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    parts = ((order or {}).get("provider_data") or {}).get("parts")
    if order is None or not parts:
        raise HTTPException(status_code=404, detail="No parts payment request for this order")
    status = parts.get("status", "pending_signature")
    if order["payment_status"] == "paid":
        status = "paid"
    return MonobankPartsOut(
        order_id=order_id,
        request_id=str(parts.get("request_id")),
        parts_count=int(parts.get("count") or 0),
        status=status,
        amount=float(parts.get("amount") or order["total_price"]),
    )


def monobank_event(payload: Dict[str, Any], source: str = "webhook") -> PaymentEvent:
    invoice_id = str(payload.get("invoiceId") or "").strip()
    provider_status = str(payload.get("status") or "").strip().lower()
    if not invoice_id or not provider_status:
        raise HTTPException(status_code=400, detail="Missing invoiceId or status")
    amount = _decimal(payload.get("finalAmount") or payload.get("amount"))
    return PaymentEvent(
        provider="monobank",
        transaction_id=f"mono:{invoice_id}:{provider_status}",
        status=monobank.map_status(provider_status),
        provider_status=provider_status,
        invoice_id=invoice_id,
        amount=(amount / 100) if amount is not None else None,
        currency=config.CURRENCY,
        event_time=monobank.parse_modified_date(payload.get("modifiedDate")),
        source=source,
        payload=payload,
    )


def handle_monobank_webhook(body: bytes, x_sign: Optional[str]) -> WebhookAckOut:
    if not monobank.verify_signature(body, x_sign):
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    event = monobank_event(payload)
    logger.info("monobank webhook invoice=%s status=%s", event.invoice_id, event.provider_status)
    return _ack(_reconcile(event))


@router.post("/monobank/webhook", response_model=WebhookAckOut)
async def monobank_webhook(request: Request, x_sign: str | None = Header(None, alias="X-Sign")):
    body = await request.body()
    return await run_in_threadpool(handle_monobank_webhook, body, x_sign)


@router.get("/monobank/status/{order_id}", response_model=PaymentStatusOut)
def monobank_status(order_id: int):
    try:
        with get_conn() as conn:
            order = orders_store.fetch_order(conn, order_id)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if not order.get("invoice_id") or order["payment_method"] != "monobank_card":
        raise HTTPException(status_code=404, detail="Order has no Monobank invoice")

    try:
        data = monobank.invoice_status(order["invoice_id"])
    except monobank.MonobankAPIError as e:
        raise HTTPException(status_code=502, detail=str(e))

    data.setdefault("invoiceId", order["invoice_id"])
    result = _reconcile(monobank_event(data, source="status_poll"))
    payment_status = result.payment_status or str(order["payment_status"])
    order_status = result.order_status or str(order["status"])
    if result.outcome == ALREADY_PROCESSED:
        payment_status, order_status = str(order["payment_status"]), str(order["status"])
    return PaymentStatusOut(
        order_id=order_id,
        payment_status=payment_status,
        order_status=order_status,
        provider_status=str(data.get("status") or ""),
    )
