from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg
from fastapi import APIRouter, Header, HTTPException, Query
from fastapi.responses import Response
from psycopg.rows import dict_row

from .. import config
from ..db import SCHEMA_ERRORS, database_unavailable, get_conn, schema_missing
from ..exports import to_csv
from ..integrations import nova_poshta, ukrposhta
from ..models import (
    AdminCustomerOut,
    AdminLoginIn,
    AdminLoginOut,
    AdminOrderUpdateIn,
    BestsellersIn,
    DashboardOut,
    OrderOut,
    PromoCodeIn,
    PromoCodeOut,
    QuestionOut,
    ReplyIn,
    ReviewOut,
    SiteSettingIn,
    SiteSettingOut,
    WaybillOut,
)
from ..security import create_access_token, require_admin, secrets_match
from ..store import orders as orders_store
from ..store import promos as promos_store
from .orders import _order_out
from .reviews import _question_out, _review_out


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


_ORDER_EXPORT_COLUMNS = [
    "id",
    "created_at",
    "status",
    "payment_status",
    "payment_method",
    "delivery_method",
    "customer_name",
    "customer_phone",
    "customer_email",
    "total_price",
    "discount_amount",
    "promo_code",
    "ttn",
]


def _ts(x) -> Optional[str]:
    return x.isoformat() if isinstance(x, datetime) else (str(x) if x is not None else None)


def _promo_out(r: Dict[str, Any]) -> PromoCodeOut:
    return PromoCodeOut(
        id=int(r["id"]),
        code=str(r["code"]),
        description=r.get("description"),
        discount_type=str(r["discount_type"]),
        discount_value=float(r["discount_value"]),
        min_order_amount=float(r.get("min_order_amount") or 0),
        max_uses=r.get("max_uses"),
        used_count=int(r.get("used_count") or 0),
        valid_from=_ts(r.get("valid_from")),
        valid_until=_ts(r.get("valid_until")),
        is_active=bool(r.get("is_active")),
    )


def _order_filters(status: Optional[str], payment_status: Optional[str], search: Optional[str]):
    where: List[str] = []
    params: List[Any] = []
    if status:
        where.append("status = %s")
        params.append(status)
    if payment_status:
        where.append("payment_status = %s")
        params.append(payment_status)
    if search:
        s = search.strip()
        like = f"%{s}%"
        if s.isdigit():
            where.append("(id = %s OR customer_phone ILIKE %s OR customer_name ILIKE %s OR customer_email ILIKE %s)")
            params.extend([int(s), like, like, like])
        else:
            where.append("(customer_phone ILIKE %s OR customer_name ILIKE %s OR customer_email ILIKE %s)")
            params.extend([like, like, like])
    clause = (" WHERE " + " AND ".join(where)) if where else ""
    return clause, params


@router.post("/login", response_model=AdminLoginOut)
def admin_login(req: AdminLoginIn) -> AdminLoginOut:
    expected_user, expected_password = config.admin_credentials()
    if not expected_user or not expected_password:
        logger.error("admin login attempted but ADMIN_USER/ADMIN_PASSWORD are not set")
        raise HTTPException(status_code=500, detail="Admin login not configured")
    user_ok = secrets_match(req.username, expected_user)
    password_ok = secrets_match(req.password, expected_password)
    if not (user_ok and password_ok):
        raise HTTPException(status_code=401, detail="Invalid admin credentials")

    return AdminLoginOut(
        admin_key=config.admin_key(),
        access_token=create_access_token(subject="admin", role="admin"),
    )


@router.get("/orders", response_model=List[OrderOut])
def list_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    clause, params = _order_filters(status, payment_status, search)
    try:
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {orders_store.ORDER_COLUMNS}
                    FROM svitanok.orders
                    {clause}
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s OFFSET %s;
                    """,
                    params + [limit, offset],
                )
                rows = cur.fetchall()
            items = orders_store.fetch_items_for_orders(conn, [int(r["id"]) for r in rows])
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    return [_order_out(r, items.get(int(r["id"]), [])) for r in rows]


@router.get("/orders/export.csv")
def export_orders_csv(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    clause, params = _order_filters(status, payment_status, search)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {", ".join(_ORDER_EXPORT_COLUMNS)}
                    FROM svitanok.orders
                    {clause}
                    ORDER BY created_at DESC, id DESC;
                    """,
                    params,
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    csv_text = to_csv(_ORDER_EXPORT_COLUMNS, [[_ts(v) if isinstance(v, datetime) else v for v in r] for r in rows], bom=True)
    filename = f"orders_{datetime.now(timezone.utc).strftime('%Y%m%d')}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/orders/{order_id}", response_model=OrderOut)
def order_detail(
    order_id: int,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            order = orders_store.fetch_order(conn, order_id)
            items = orders_store.fetch_order_items(conn, order_id) if order else []
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return _order_out(order, items)


@router.patch("/orders/{order_id}", response_model=OrderOut)
def update_order(
    order_id: int,
    req: AdminOrderUpdateIn,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    if req.status is None and req.ttn is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    ttn = req.ttn.strip() if req.ttn else None
    try:
        with get_conn() as conn:
            if not orders_store.update_order(conn, order_id, req.status, ttn):
                raise HTTPException(status_code=404, detail="Order not found")
            order = orders_store.fetch_order(conn, order_id)
            items = orders_store.fetch_order_items(conn, order_id)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    logger.info("admin order update order=%s status=%s ttn=%s", order_id, req.status, ttn)
    return _order_out(order, items)


@router.post("/orders/{order_id}/ttn", response_model=WaybillOut)
def create_ttn(
    order_id: int,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            order = orders_store.fetch_order(conn, order_id)
            if order is None:
                raise HTTPException(status_code=404, detail="Order not found")
            if order["delivery_method"] != "nova_poshta_dept":
                raise HTTPException(status_code=400, detail="Waybills are created for Nova Poshta branch deliveries only")
            if order.get("ttn"):
                raise HTTPException(status_code=409, detail="Order already has a TTN")
            try:
                doc = nova_poshta.create_waybill(order)
            except nova_poshta.NovaPoshtaError as e:
                logger.warning("nova poshta waybill failed order=%s: %s", order_id, e)
                raise HTTPException(status_code=502, detail=str(e))
            ttn = str(doc["IntDocNumber"])
            orders_store.set_shipped(conn, order_id, ttn)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    cost = doc.get("CostOnSite")
    return WaybillOut(
        order_id=order_id,
        ttn=ttn,
        status="shipped",
        cost=float(cost) if cost not in (None, "") else None,
        estimated_delivery_date=doc.get("EstimatedDeliveryDate"),
    )


@router.post("/orders/{order_id}/ukrposhta-shipment", response_model=WaybillOut)
def create_ukrposhta_shipment(
    order_id: int,
    weight: float = Query(1.0, gt=0, le=30),
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            order = orders_store.fetch_order(conn, order_id)
            if order is None:
                raise HTTPException(status_code=404, detail="Order not found")
            if order["delivery_method"] != "ukrposhta":
                raise HTTPException(status_code=400, detail="Order is not an Ukrposhta delivery")
            if order.get("ttn"):
                raise HTTPException(status_code=409, detail="Order already has a TTN")
            items = orders_store.fetch_order_items(conn, order_id)
            try:
                shipment = ukrposhta.create_shipment(order, items, weight=weight)
            except ukrposhta.UkrposhtaError as e:
                logger.warning("ukrposhta shipment failed order=%s: %s", order_id, e)
                raise HTTPException(status_code=502, detail=str(e))
            ttn = str(shipment["tracking_number"])
            orders_store.set_shipped(conn, order_id, ttn)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")

    cost = shipment.get("delivery_price")
    return WaybillOut(
        order_id=order_id,
        ttn=ttn,
        status="shipped",
        cost=float(cost) if cost not in (None, "") else None,
        estimated_delivery_date=shipment.get("estimated_delivery_date"),
    )


@router.get("/promo-codes", response_model=List[PromoCodeOut])
def list_promo_codes(
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            rows = promos_store.list_promos(conn)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Promo")
    return [_promo_out(r) for r in rows]


@router.post("/promo-codes", response_model=PromoCodeOut, status_code=201)
def create_promo_code(
    req: PromoCodeIn,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    if req.discount_type == "percentage" and req.discount_value > 100:
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100")
    try:
        with get_conn() as conn:
            row = promos_store.create_promo(conn, req.model_dump())
    except psycopg.errors.UniqueViolation:
        raise HTTPException(status_code=409, detail="Promo code already exists")
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Promo")
    return _promo_out(row)


@router.put("/promo-codes/{promo_id}", response_model=PromoCodeOut)
def update_promo_code(
    promo_id: int,
    req: PromoCodeIn,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    if req.discount_type == "percentage" and req.discount_value > 100:
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100")
    try:
        with get_conn() as conn:
            row = promos_store.update_promo(conn, promo_id, req.model_dump())
    except psycopg.errors.UniqueViolation:
        raise HTTPException(status_code=409, detail="Promo code already exists")
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Promo")
    if row is None:
        raise HTTPException(status_code=404, detail="Promo code not found")
    return _promo_out(row)


@router.delete("/promo-codes/{promo_id}", status_code=204)
def delete_promo_code(
    promo_id: int,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            deleted = promos_store.delete_promo(conn, promo_id)
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Promo")
    if not deleted:
        raise HTTPException(status_code=404, detail="Promo code not found")


@router.get("/reviews/pending", response_model=List[ReviewOut])
def pending_reviews(
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, product_id, user_name, rating, comment, admin_reply, is_approved, created_at
                    FROM svitanok.reviews
                    WHERE NOT is_approved
                    ORDER BY created_at, id;
                    """
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Reviews")
    return [_review_out(r) for r in rows]


def _moderate(sql: str, params: tuple, area: str, missing: str):
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing(area)
    if row is None:
        raise HTTPException(status_code=404, detail=missing)
    return row


_REVIEW_RETURNING = "RETURNING id, product_id, user_name, rating, comment, admin_reply, is_approved, created_at;"
_QUESTION_RETURNING = "RETURNING id, product_id, user_name, question, answer, is_approved, created_at;"


@router.post("/reviews/{review_id}/approve", response_model=ReviewOut)
def approve_review(
    review_id: int,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    row = _moderate(
        "UPDATE svitanok.reviews SET is_approved = TRUE WHERE id = %s " + _REVIEW_RETURNING,
        (review_id,),
        "Reviews",
        "Review not found",
    )
    return _review_out(row)


@router.post("/reviews/{review_id}/reply", response_model=ReviewOut)
def reply_review(
    review_id: int,
    req: ReplyIn,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    row = _moderate(
        "UPDATE svitanok.reviews SET admin_reply = %s WHERE id = %s " + _REVIEW_RETURNING,
        (req.reply.strip(), review_id),
        "Reviews",
        "Review not found",
    )
    return _review_out(row)


@router.delete("/reviews/{review_id}", status_code=204)
def delete_review(
    review_id: int,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    _moderate("DELETE FROM svitanok.reviews WHERE id = %s RETURNING id;", (review_id,), "Reviews", "Review not found")


@router.get("/questions/pending", response_model=List[QuestionOut])
def pending_questions(
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, product_id, user_name, question, answer, is_approved, created_at
                    FROM svitanok.product_questions
                    WHERE NOT is_approved
                    ORDER BY created_at, id;
                    """
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Questions")
    return [_question_out(r) for r in rows]


@router.post("/questions/{question_id}/approve", response_model=QuestionOut)
def approve_question(
    question_id: int,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    row = _moderate(
        "UPDATE svitanok.product_questions SET is_approved = TRUE WHERE id = %s " + _QUESTION_RETURNING,
        (question_id,),
        "Questions",
        "Question not found",
    )
    return _question_out(row)


@router.post("/questions/{question_id}/reply", response_model=QuestionOut)
def answer_question(
    question_id: int,
    req: ReplyIn,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    # An answered question is published.
    row = _moderate(
        "UPDATE svitanok.product_questions SET answer = %s, is_approved = TRUE WHERE id = %s " + _QUESTION_RETURNING,
        (req.reply.strip(), question_id),
        "Questions",
        "Question not found",
    )
    return _question_out(row)


@router.delete("/questions/{question_id}", status_code=204)
def delete_question(
    question_id: int,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    _moderate(
        "DELETE FROM svitanok.product_questions WHERE id = %s RETURNING id;",
        (question_id,),
        "Questions",
        "Question not found",
    )


@router.get("/customers", response_model=List[AdminCustomerOut])
def list_customers(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT p.id, p.email, p.full_name, p.phone, p.role,
                           COUNT(o.id) AS orders_count,
                           COALESCE(SUM(o.total_price) FILTER (WHERE o.payment_status = 'paid'), 0) AS total_spent
                    FROM svitanok.profiles p
                    LEFT JOIN svitanok.orders o ON o.user_id = p.id
                    GROUP BY p.id
                    ORDER BY p.created_at DESC, p.id DESC
                    LIMIT %s OFFSET %s;
                    """,
                    (limit, offset),
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Auth")
    return [
        AdminCustomerOut(
            id=int(r[0]),
            email=str(r[1]),
            full_name=r[2],
            phone=r[3],
            role=str(r[4]),
            orders_count=int(r[5]),
            total_spent=float(r[6]),
        )
        for r in rows
    ]


@router.put("/bestsellers", response_model=List[int])
def replace_bestsellers(
    req: BestsellersIn,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    product_ids = list(dict.fromkeys(req.product_ids))
    try:
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM svitanok.bestsellers;")
                    cur.executemany(
                        "INSERT INTO svitanok.bestsellers (product_id, position) VALUES (%s, %s);",
                        [(pid, pos) for pos, pid in enumerate(product_ids, start=1)],
                    )
    except psycopg.errors.ForeignKeyViolation:
        raise HTTPException(status_code=400, detail="Unknown product id in bestsellers")
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")
    return product_ids


@router.get("/settings", response_model=List[SiteSettingOut])
def list_settings(
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT key, value, label FROM svitanok.site_settings ORDER BY key;")
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Settings")
    return [SiteSettingOut(key=r[0], value=r[1], label=r[2]) for r in rows]


@router.put("/settings/{key}", response_model=SiteSettingOut)
def upsert_setting(
    key: str,
    req: SiteSettingIn,
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO svitanok.site_settings (key, value, label, is_public, updated_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value,
                        label = COALESCE(EXCLUDED.label, svitanok.site_settings.label),
                        is_public = EXCLUDED.is_public,
                        updated_at = now()
                    RETURNING key, value, label;
                    """,
                    (key, req.value, req.label, req.is_public),
                )
                r = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Settings")
    return SiteSettingOut(key=r[0], value=r[1], label=r[2])


@router.get("/dashboard", response_model=DashboardOut)
def dashboard(
    window_days: int = Query(30, ge=1, le=365),
    authorization: str | None = Header(None, alias="Authorization"),
    admin_key: str | None = Header(None, alias="X-Admin-Key"),
):
    require_admin(authorization, admin_key)
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        COUNT(*) FILTER (WHERE created_at >= date_trunc('day', now())),
                        COUNT(*) FILTER (WHERE created_at >= now() - make_interval(days => %s)),
                        COALESCE(SUM(total_price) FILTER (
                            WHERE payment_status = 'paid' AND created_at >= now() - make_interval(days => %s)
                        ), 0),
                        COUNT(*) FILTER (WHERE status = 'pending'),
                        COALESCE(AVG(total_price) FILTER (
                            WHERE status <> 'cancelled' AND created_at >= now() - make_interval(days => %s)
                        ), 0)
                    FROM svitanok.orders;
                    """,
                    (window_days, window_days, window_days),
                )
                today, in_window, revenue, pending, aov = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Order")
    return DashboardOut(
        window_days=window_days,
        orders_today=int(today),
        orders_in_window=int(in_window),
        revenue_paid=round(float(revenue), 2),
        pending_orders=int(pending),
        average_order_value=round(float(aov), 2),
    )
