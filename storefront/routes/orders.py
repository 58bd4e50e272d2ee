from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

import psycopg
from fastapi import APIRouter, Header, HTTPException, Query

from ..db import SCHEMA_ERRORS, database_unavailable, get_conn, schema_missing
from ..integrations import mailer, telegram
from ..models import (
    CancelOrderOut,
    CartItemIn,
    CheckoutIn,
    LiqPayFormOut,
    OrderCreatedOut,
    OrderItemOut,
    OrderOut,
    PaymentStepOut,
    PromoValidateOut,
    QuickOrderIn,
    QuoteIn,
    QuoteLineOut,
    QuoteOut,
)
from ..payments import liqpay, monobank, service as payment_service
from ..pricing import (
    OrderTotals,
    calculate_discount,
    calculate_totals,
    check_promo,
    normalize_code,
    price_cart,
    reconcile_client_total,
)
from ..security import optional_user, require_user, user_id_from_payload
from ..store import catalog as catalog_store
from ..store import orders as orders_store
from ..store import promos as promos_store


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["orders"])


_PHONE_RE = re.compile(r"^380\d{9}$")


def _ts(x) -> str | None:
    if x is None:
        return None
    if hasattr(x, "isoformat"):
        return x.isoformat()
    return str(x)


def normalize_checkout_phone(raw: str) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 10 and digits.startswith("0"):
        digits = "38" + digits
    if not _PHONE_RE.match(digits):
        raise HTTPException(status_code=400, detail="Phone must be a Ukrainian number in the format +380XXXXXXXXX")
    return digits


def validate_delivery(req: CheckoutIn) -> Dict[str, Any]:
    info = req.delivery_info.model_dump(exclude_none=True)
    info.setdefault("full_name", req.customer_name)
    method = req.delivery_method
    if method == "nova_poshta_dept":
        if not info.get("city_ref") or not info.get("warehouse_ref"):
            raise HTTPException(status_code=400, detail="Select a Nova Poshta city and branch")
    elif method == "nova_poshta_courier":
        if not info.get("city_ref") or not info.get("address"):
            raise HTTPException(status_code=400, detail="City and address are required for courier delivery")
    elif method == "ukrposhta":
        if not info.get("city") or not (info.get("warehouse") or info.get("postcode")):
            raise HTTPException(status_code=400, detail="City and post office are required for Ukrposhta")
    return info


def _order_out(row: Mapping[str, Any], items: List[Mapping[str, Any]]) -> OrderOut:
    return OrderOut(
        id=int(row["id"]),
        status=str(row["status"]),
        payment_status=str(row["payment_status"]),
        payment_method=str(row["payment_method"]),
        delivery_method=str(row["delivery_method"]),
        delivery_info=dict(row.get("delivery_info") or {}),
        customer_name=str(row["customer_name"]),
        customer_phone=str(row["customer_phone"]),
        customer_email=row.get("customer_email"),
        total_price=float(row["total_price"]),
        discount_amount=float(row.get("discount_amount") or 0),
        promo_code=row.get("promo_code"),
        ttn=row.get("ttn"),
        created_at=_ts(row.get("created_at")),
        items=[
            OrderItemOut(
                product_id=i.get("product_id"),
                product_name=str(i["product_name"]),
                quantity=int(i["quantity"]),
                price_at_purchase=float(i["price_at_purchase"]),
            )
            for i in items
        ],
    )


def _price_and_promo(conn, items, promo_code: Optional[str]):
    products = catalog_store.fetch_products_by_ids(conn, [i.product_id for i in items])
    lines = price_cart([(i.product_id, i.quantity) for i in items], products)

    promo = None
    code = normalize_code(promo_code)
    if code:
        promo = promos_store.fetch_promo(conn, code)
        subtotal = calculate_totals(lines).subtotal
        check = check_promo(promo, subtotal)
        if not check.valid:
            raise HTTPException(status_code=400, detail=check.error)
    return lines, promo, calculate_totals(lines, promo)


@router.get("/promos/validate", response_model=PromoValidateOut)
def validate_promo(code: str, amount: float = Query(..., ge=0)):
    c = normalize_code(code)
    if not c:
        raise HTTPException(status_code=400, detail="Promo code is required")

    try:
        with get_conn() as conn:
            promo = promos_store.fetch_promo(conn, c)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Promo")

    check = check_promo(promo, amount)
    if not check.valid:
        return PromoValidateOut(code=c, valid=False, discount_amount=0.0, message=check.error or "Invalid code")

    discount = calculate_discount(promo, amount)
    return PromoValidateOut(
        code=c,
        valid=True,
        discount_amount=float(discount),
        message="Applied",
        discount_type=promo.discount_type,
        discount_value=float(promo.discount_value),
    )


@router.post("/checkout/quote", response_model=QuoteOut)
def quote(req: QuoteIn):
    promo_message = None
    try:
        with get_conn() as conn:
            products = catalog_store.fetch_products_by_ids(conn, [i.product_id for i in req.items])
            lines = price_cart([(i.product_id, i.quantity) for i in req.items], products)
            promo = None
            if normalize_code(req.promo_code):
                candidate = promos_store.fetch_promo(conn, req.promo_code)
                check = check_promo(candidate, calculate_totals(lines).subtotal)
                if check.valid:
                    promo = candidate
                    promo_message = "Applied"
                else:
                    promo_message = check.error
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")

    totals = calculate_totals(lines, promo)
    return QuoteOut(
        lines=[
            QuoteLineOut(
                product_id=line.product_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=float(line.unit_price),
                line_total=float(line.line_total),
            )
            for line in lines
        ],
        subtotal=float(totals.subtotal),
        discount_amount=float(totals.discount_amount),
        shipping_cost=float(totals.shipping_cost),
        total=float(totals.total),
        free_shipping=totals.free_shipping,
        amount_to_free_shipping=float(totals.amount_to_free_shipping),
        promo_code=totals.promo_code,
        promo_message=promo_message,
    )


def _payment_step(conn, order: Mapping[str, Any], items: List[Mapping[str, Any]], parts_count: Optional[int]) -> Optional[PaymentStepOut]:
    method = order["payment_method"]
    if method == "liqpay":
        try:
            form = payment_service.liqpay_form(order)
        except liqpay.LiqPayError as e:
            logger.error("liqpay form not built for order=%s: %s", order["id"], e)
            return None
        return PaymentStepOut(provider="liqpay", liqpay=LiqPayFormOut(**form))
    if method == "monobank_card":
        try:
            invoice = payment_service.start_monobank_invoice(conn, order, items)
        except monobank.MonobankAPIError as e:
            logger.error("monobank invoice not created for order=%s: %s", order["id"], e)
            return None
        return PaymentStepOut(provider="monobank", page_url=invoice["page_url"], invoice_id=invoice["invoice_id"])
    if method == "monobank_parts":
        parts = payment_service.request_parts(conn, order, parts_count)
        return PaymentStepOut(provider="monobank_parts", invoice_id=parts["request_id"])
    return None


def _after_checkout(order: Mapping[str, Any], items: List[Mapping[str, Any]]) -> None:
    telegram.notify(telegram.format_order_message(order, items))
    mailer.send_order_confirmation(order, items)


def _place_order(conn, fields: Dict[str, Any], items, promo_code: Optional[str], client_total) -> tuple[int, OrderTotals]:
    with conn.transaction():
        lines, promo, totals = _price_and_promo(conn, items, promo_code)
        if totals.total <= 0:
            raise HTTPException(status_code=400, detail="Order total must be greater than zero")
        reconcile_client_total(totals, client_total)
        if promo is not None and not promos_store.claim_usage(conn, promo.code):
            raise HTTPException(status_code=409, detail="Promo code usage limit reached")

        fields = dict(fields)
        fields.update(
            total_price=totals.total,
            discount_amount=totals.discount_amount,
            promo_code=totals.promo_code,
        )
        order_id = orders_store.insert_order(conn, fields, lines)
    return order_id, totals


@router.post("/orders", response_model=OrderCreatedOut)
def create_order(req: CheckoutIn, authorization: str | None = Header(None, alias="Authorization")):
    phone = normalize_checkout_phone(req.customer_phone)
    delivery_info = validate_delivery(req)
    if req.payment_method == "monobank_parts":
        payment_service.validate_parts_count(req.parts_count)
    user_id = user_id_from_payload(optional_user(authorization))

    fields = {
        "user_id": user_id,
        "payment_method": req.payment_method,
        "delivery_method": req.delivery_method,
        "delivery_info": delivery_info,
        "customer_name": req.customer_name.strip(),
        "customer_phone": phone,
        "customer_email": (req.customer_email or "").strip().lower() or None,
    }

    try:
        with get_conn() as conn:
            order_id, totals = _place_order(conn, fields, req.items, req.promo_code, req.client_total)
            order = orders_store.fetch_order(conn, order_id)
            items = orders_store.fetch_order_items(conn, order_id)
            logger.info("order created id=%s total=%s method=%s", order_id, totals.total, req.payment_method)
            payment = _payment_step(conn, order, items, req.parts_count)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    _after_checkout(order, items)

    return OrderCreatedOut(
        order_id=order_id,
        status="pending",
        payment_status="pending",
        subtotal=float(totals.subtotal),
        discount_amount=float(totals.discount_amount),
        shipping_cost=float(totals.shipping_cost),
        total=float(totals.total),
        free_shipping=totals.free_shipping,
        payment=payment,
    )


@router.post("/orders/quick", response_model=OrderCreatedOut)
def quick_order(req: QuickOrderIn, authorization: str | None = Header(None, alias="Authorization")):
    phone = normalize_checkout_phone(req.customer_phone)
    user_id = user_id_from_payload(optional_user(authorization))
    fields = {
        "user_id": user_id,
        "payment_method": "cash",
        "delivery_method": "quick_order",
        "delivery_info": {"full_name": req.customer_name.strip(), "phone": phone},
        "customer_name": req.customer_name.strip(),
        "customer_phone": phone,
        "customer_email": None,
    }
    items = [CartItemIn(product_id=req.product_id, quantity=req.quantity)]

    try:
        with get_conn() as conn:
            order_id, totals = _place_order(conn, fields, items, None, None)
            order = orders_store.fetch_order(conn, order_id)
            order_items = orders_store.fetch_order_items(conn, order_id)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    logger.info("quick order created id=%s", order_id)
    _after_checkout(order, order_items)

    return OrderCreatedOut(
        order_id=order_id,
        status="pending",
        payment_status="pending",
        subtotal=float(totals.subtotal),
        discount_amount=float(totals.discount_amount),
        shipping_cost=float(totals.shipping_cost),
        total=float(totals.total),
        free_shipping=totals.free_shipping,
    )


@router.get("/orders/mine", response_model=List[OrderOut])
def my_orders(authorization: str | None = Header(None, alias="Authorization")):
    user_id = user_id_from_payload(require_user(authorization))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        with get_conn() as conn:
            rows = orders_store.list_user_orders(conn, user_id)
            items = orders_store.fetch_items_for_orders(conn, [int(r["id"]) for r in rows])
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    return [_order_out(r, items.get(int(r["id"]), [])) for r in rows]


def _load_own_order(conn, order_id: int, payload: Dict[str, Any]) -> Mapping[str, Any]:
    order = orders_store.fetch_order(conn, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if payload.get("role") != "admin" and order.get("user_id") != user_id_from_payload(payload):
        raise HTTPException(status_code=403, detail="Not your order")
    return order


@router.get("/orders/{order_id}", response_model=OrderOut)
def order_detail(order_id: int, authorization: str | None = Header(None, alias="Authorization")):
    payload = require_user(authorization)
    try:
        with get_conn() as conn:
            order = _load_own_order(conn, order_id, payload)
            items = orders_store.fetch_order_items(conn, order_id)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    return _order_out(order, items)


@router.post("/orders/{order_id}/cancel", response_model=CancelOrderOut)
def cancel_order(order_id: int, authorization: str | None = Header(None, alias="Authorization")):
    payload = require_user(authorization)
    try:
        with get_conn() as conn:
            _load_own_order(conn, order_id, payload)
            if not orders_store.cancel_pending(conn, order_id):
                raise HTTPException(status_code=409, detail="Only unpaid pending orders can be cancelled")
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    logger.info("order cancelled id=%s", order_id)
    return CancelOrderOut(order_id=order_id, status="cancelled")
