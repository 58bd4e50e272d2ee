from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..pricing import CartLine


ORDER_COLUMNS = """
    id, user_id, status, payment_status, payment_method, delivery_method, delivery_info,
    customer_name, customer_phone, customer_email, total_price, discount_amount, promo_code,
    ttn, invoice_id, payment_transaction_id, provider_data, created_at, updated_at
"""


def fetch_order(conn, order_id: int) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT {ORDER_COLUMNS} FROM svitanok.orders WHERE id = %s;", (int(order_id),))
        return cur.fetchone()


def fetch_order_items(conn, order_id: int) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT product_id, product_name, quantity, price_at_purchase
            FROM svitanok.order_items
            WHERE order_id = %s
            ORDER BY id;
            """,
            (int(order_id),),
        )
        return list(cur.fetchall())


def fetch_items_for_orders(conn, order_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    out: Dict[int, List[Dict[str, Any]]] = {int(i): [] for i in order_ids}
    if not order_ids:
        return out
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT order_id, product_id, product_name, quantity, price_at_purchase
            FROM svitanok.order_items
            WHERE order_id = ANY(%s)
            ORDER BY order_id, id;
            """,
            ([int(i) for i in order_ids],),
        )
        for row in cur.fetchall():
            out.setdefault(int(row["order_id"]), []).append(row)
    return out


def insert_order(conn, order: Dict[str, Any], lines: Iterable[CartLine]) -> int:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO svitanok.orders (
                user_id, status, payment_status, payment_method, delivery_method, delivery_info,
                customer_name, customer_phone, customer_email, total_price, discount_amount, promo_code
            )
            VALUES (%s, 'pending', 'pending', %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id;
            """,
            (
                order.get("user_id"),
                order["payment_method"],
                order["delivery_method"],
                Jsonb(order.get("delivery_info") or {}),
                order["customer_name"],
                order["customer_phone"],
                order.get("customer_email"),
                order["total_price"],
                order.get("discount_amount") or 0,
                order.get("promo_code"),
            ),
        )
        order_id = int(cur.fetchone()[0])
        cur.executemany(
            """
            INSERT INTO svitanok.order_items (order_id, product_id, product_name, quantity, price_at_purchase)
            VALUES (%s, %s, %s, %s, %s);
            """,
            [(order_id, line.product_id, line.name, line.quantity, line.unit_price) for line in lines],
        )
    return order_id


def list_user_orders(conn, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {ORDER_COLUMNS}
            FROM svitanok.orders
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s;
            """,
            (int(user_id), int(limit)),
        )
        return list(cur.fetchall())


def cancel_pending(conn, order_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE svitanok.orders
            SET status = 'cancelled', updated_at = now()
            WHERE id = %s AND status = 'pending' AND payment_status <> 'paid'
            RETURNING id;
            """,
            (int(order_id),),
        )
        return cur.fetchone() is not None


def attach_invoice(conn, order_id: int, invoice_id: str, payment_method: str, provider_data: Dict[str, Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE svitanok.orders
            SET invoice_id = %s,
                payment_method = %s,
                provider_data = provider_data || %s,
                updated_at = now()
            WHERE id = %s;
            """,
            (invoice_id, payment_method, Jsonb(provider_data), int(order_id)),
        )


def set_shipped(conn, order_id: int, ttn: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE svitanok.orders
            SET ttn = %s, status = 'shipped', updated_at = now()
            WHERE id = %s;
            """,
            (ttn, int(order_id)),
        )


def update_order(conn, order_id: int, status: Optional[str], ttn: Optional[str]) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE svitanok.orders
            SET status = COALESCE(%s, status),
                ttn = COALESCE(%s, ttn),
                updated_at = now()
            WHERE id = %s
            RETURNING id;
            """,
            (status, ttn, int(order_id)),
        )
        return cur.fetchone() is not None
