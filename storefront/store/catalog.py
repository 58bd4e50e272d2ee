from __future__ import annotations

from typing import Any, Dict, Iterable, List

from psycopg.rows import dict_row


def fetch_products_by_ids(conn, product_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
    ids = sorted({int(p) for p in product_ids})
    if not ids:
        return {}
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, name, price, in_stock
            FROM svitanok.products
            WHERE id = ANY(%s);
            """,
            (ids,),
        )
        return {int(r["id"]): r for r in cur.fetchall()}


def fetch_feed_products(conn) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT p.id, p.name, p.slug, p.description, p.price, p.old_price, p.currency,
                   p.in_stock, p.images, p.attributes, p.vendor_code, p.category_id,
                   p.created_at, p.updated_at, b.name AS brand, c.name AS category
            FROM svitanok.products p
            LEFT JOIN svitanok.brands b ON b.id = p.brand_id
            LEFT JOIN svitanok.categories c ON c.id = p.category_id
            ORDER BY p.id;
            """
        )
        return list(cur.fetchall())


def fetch_categories(conn) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, name, slug, parent_id, level
            FROM svitanok.categories
            ORDER BY level, sort_order, id;
            """
        )
        return list(cur.fetchall())
