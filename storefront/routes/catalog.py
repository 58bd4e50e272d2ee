from __future__ import annotations

from typing import Any, Dict, List, Optional

import psycopg
from fastapi import APIRouter, HTTPException, Query
from psycopg.rows import dict_row

from ..db import SCHEMA_ERRORS, database_unavailable, get_conn, schema_missing
from ..models import BrandOut, CatalogFiltersOut, CategoryOut, ProductDetailOut, ProductOut, SiteSettingOut


router = APIRouter(prefix="/api", tags=["catalog"])


PROBLEM_TAG_KEY = "Проблема шкіри"

_SORTS = {
    "newest": "p.created_at DESC, p.id DESC",
    "price_asc": "p.price ASC, p.id",
    "price_desc": "p.price DESC, p.id",
    "popular": "COALESCE(s.units, 0) DESC, p.id DESC",
}

_PRODUCT_SELECT = """
    SELECT p.id, p.name, p.slug, p.price, p.old_price, p.currency, p.in_stock,
           p.images, p.category_id, b.name AS brand
    FROM svitanok.products p
    LEFT JOIN svitanok.brands b ON b.id = p.brand_id
"""


def _product_out(row: Dict[str, Any]) -> ProductOut:
    images = row.get("images") or []
    return ProductOut(
        id=int(row["id"]),
        name=str(row["name"]),
        slug=str(row["slug"]),
        price=float(row["price"]),
        old_price=float(row["old_price"]) if row.get("old_price") is not None else None,
        currency=str(row.get("currency") or "UAH"),
        in_stock=bool(row.get("in_stock")),
        image_url=str(images[0]) if images else None,
        brand=row.get("brand"),
        category_id=row.get("category_id"),
    )


@router.get("/products", response_model=List[ProductOut])
def list_products(
    category: Optional[str] = Query(None, max_length=200),
    brand: Optional[str] = Query(None, max_length=200),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    problem_tags: Optional[List[str]] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    in_stock: Optional[bool] = Query(None),
    sort: str = Query("newest"),
    limit: int = Query(24, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    if sort not in _SORTS:
        raise HTTPException(status_code=400, detail=f"Unknown sort: {sort}")

    where: List[str] = []
    params: List[Any] = []
    if category:
        where.append(
            """
            p.category_id IN (
                WITH RECURSIVE tree AS (
                    SELECT id FROM svitanok.categories WHERE slug = %s
                    UNION ALL
                    SELECT c.id FROM svitanok.categories c JOIN tree t ON c.parent_id = t.id
                )
                SELECT id FROM tree
            )
            """
        )
        params.append(category)
    if brand:
        where.append("(b.slug = %s OR b.name = %s)")
        params.extend([brand, brand])
    if min_price is not None:
        where.append("p.price >= %s")
        params.append(min_price)
    if max_price is not None:
        where.append("p.price <= %s")
        params.append(max_price)
    if problem_tags:
        # The attribute holds either a single string or a list of strings.
        where.append(
            """
            EXISTS (
                SELECT 1
                FROM jsonb_array_elements_text(
                    CASE jsonb_typeof(p.attributes->%s)
                        WHEN 'array' THEN p.attributes->%s
                        WHEN 'string' THEN jsonb_build_array(p.attributes->%s)
                        ELSE '[]'::jsonb
                    END
                ) AS tag
                WHERE tag = ANY(%s)
            )
            """
        )
        params.extend([PROBLEM_TAG_KEY, PROBLEM_TAG_KEY, PROBLEM_TAG_KEY, list(problem_tags)])
    if search:
        where.append("p.name ILIKE %s")
        params.append(f"%{search.strip()}%")
    if in_stock is not None:
        where.append("p.in_stock = %s")
        params.append(in_stock)

    sql = _PRODUCT_SELECT
    if sort == "popular":
        sql += """
            LEFT JOIN (
                SELECT product_id, SUM(quantity) AS units
                FROM svitanok.order_items GROUP BY product_id
            ) s ON s.product_id = p.id
        """
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += f" ORDER BY {_SORTS[sort]} LIMIT %s OFFSET %s;"
    params.extend([limit, offset])

    try:
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")

    return [_product_out(r) for r in rows]


@router.get("/products/{slug}", response_model=ProductDetailOut)
def get_product(slug: str):
    try:
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT p.id, p.name, p.slug, p.price, p.old_price, p.currency, p.in_stock,
                           p.images, p.category_id, p.description, p.attributes, p.vendor_code,
                           p.stock_quantity, b.name AS brand, c.name AS category
                    FROM svitanok.products p
                    LEFT JOIN svitanok.brands b ON b.id = p.brand_id
                    LEFT JOIN svitanok.categories c ON c.id = p.category_id
                    WHERE p.slug = %s;
                    """,
                    (slug,),
                )
                row = cur.fetchone()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")

    if row is None:
        raise HTTPException(status_code=404, detail="Product not found")

    base = _product_out(row)
    return ProductDetailOut(
        **base.model_dump(),
        description=row.get("description"),
        images=[str(i) for i in (row.get("images") or [])],
        attributes=dict(row.get("attributes") or {}),
        vendor_code=row.get("vendor_code"),
        category=row.get("category"),
        stock_quantity=row.get("stock_quantity"),
    )


@router.get("/products/{product_id}/recommended", response_model=List[ProductOut])
def recommended(product_id: int, limit: int = Query(8, ge=1, le=24)):
    try:
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    _PRODUCT_SELECT
                    + """
                    WHERE p.category_id = (SELECT category_id FROM svitanok.products WHERE id = %s)
                      AND p.id <> %s
                      AND p.in_stock
                    ORDER BY random()
                    LIMIT %s;
                    """,
                    (product_id, product_id, limit),
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")
    return [_product_out(r) for r in rows]


@router.get("/products/{product_id}/frequently-bought", response_model=List[ProductOut])
def frequently_bought(product_id: int, limit: int = Query(4, ge=1, le=12)):
    try:
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    WITH together AS (
                        SELECT other.product_id, COUNT(*) AS times
                        FROM svitanok.order_items mine
                        JOIN svitanok.order_items other
                          ON other.order_id = mine.order_id AND other.product_id <> mine.product_id
                        WHERE mine.product_id = %s
                        GROUP BY other.product_id
                    )
                    SELECT p.id, p.name, p.slug, p.price, p.old_price, p.currency, p.in_stock,
                           p.images, p.category_id, b.name AS brand
                    FROM together t
                    JOIN svitanok.products p ON p.id = t.product_id
                    LEFT JOIN svitanok.brands b ON b.id = p.brand_id
                    WHERE p.in_stock
                    ORDER BY t.times DESC, p.id
                    LIMIT %s;
                    """,
                    (product_id, limit),
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")
    return [_product_out(r) for r in rows]


@router.get("/categories", response_model=List[CategoryOut])
def list_categories():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, name, slug, parent_id, level, image_url
                    FROM svitanok.categories
                    ORDER BY level, sort_order, name;
                    """
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")
    return [
        CategoryOut(id=int(r[0]), name=r[1], slug=r[2], parent_id=r[3], level=int(r[4] or 0), image_url=r[5])
        for r in rows
    ]


@router.get("/brands", response_model=List[BrandOut])
def list_brands():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, name, slug, logo_url FROM svitanok.brands ORDER BY name;")
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")
    return [BrandOut(id=int(r[0]), name=r[1], slug=r[2], logo_url=r[3]) for r in rows]


@router.get("/bestsellers", response_model=List[ProductOut])
def bestsellers():
    try:
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    _PRODUCT_SELECT
                    + """
                    JOIN svitanok.bestsellers bs ON bs.product_id = p.id
                    ORDER BY bs.position;
                    """
                )
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")
    return [_product_out(r) for r in rows]


@router.get("/filters", response_model=CatalogFiltersOut)
def catalog_filters():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COALESCE(MIN(price), 0), COALESCE(MAX(price), 0) FROM svitanok.products;")
                min_price, max_price = cur.fetchone()
                cur.execute(
                    """
                    SELECT DISTINCT b.name
                    FROM svitanok.products p JOIN svitanok.brands b ON b.id = p.brand_id
                    ORDER BY b.name;
                    """
                )
                brands = [r[0] for r in cur.fetchall()]
                cur.execute(
                    """
                    SELECT DISTINCT tag
                    FROM svitanok.products p,
                         jsonb_array_elements_text(
                             CASE jsonb_typeof(p.attributes->%s)
                                 WHEN 'array' THEN p.attributes->%s
                                 WHEN 'string' THEN jsonb_build_array(p.attributes->%s)
                                 ELSE '[]'::jsonb
                             END
                         ) AS tag
                    ORDER BY tag;
                    """,
                    (PROBLEM_TAG_KEY, PROBLEM_TAG_KEY, PROBLEM_TAG_KEY),
                )
                tags = [r[0] for r in cur.fetchall()]
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Catalog")
    return CatalogFiltersOut(min_price=float(min_price), max_price=float(max_price), brands=brands, problem_tags=tags)


@router.get("/settings", response_model=List[SiteSettingOut])
def public_settings():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT key, value, label FROM svitanok.site_settings WHERE is_public ORDER BY key;")
                rows = cur.fetchall()
    except psycopg.OperationalError:
        raise database_unavailable()
    except SCHEMA_ERRORS:
        raise schema_missing("Settings")
    return [SiteSettingOut(key=r[0], value=r[1], label=r[2]) for r in rows]
