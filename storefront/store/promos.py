from __future__ import annotations

from typing import Any, Dict, List, Optional

from psycopg.rows import dict_row

from ..pricing import PromoCode, normalize_code


PROMO_COLUMNS = """
    id, code, description, discount_type, discount_value, min_order_amount,
    max_uses, used_count, valid_from, valid_until, is_active
"""


def fetch_promo(conn, code: str) -> Optional[PromoCode]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {PROMO_COLUMNS} FROM svitanok.promo_codes WHERE upper(code) = %s;",
            (normalize_code(code),),
        )
        row = cur.fetchone()
    return PromoCode.from_row(row) if row else None


def claim_usage(conn, code: str) -> bool:
    """Increment used_count unless the limit was reached in the meantime."""
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE svitanok.promo_codes
            SET used_count = used_count + 1
            WHERE upper(code) = %s
              AND is_active
              AND (max_uses IS NULL OR used_count < max_uses)
            RETURNING id;
            """,
            (normalize_code(code),),
        )
        return cur.fetchone() is not None


def list_promos(conn) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT {PROMO_COLUMNS} FROM svitanok.promo_codes ORDER BY id DESC;")
        return list(cur.fetchall())


def _promo_params(promo: Dict[str, Any]) -> tuple:
    return (
        normalize_code(promo["code"]),
        promo.get("description"),
        promo["discount_type"],
        promo["discount_value"],
        promo.get("min_order_amount") or 0,
        promo.get("max_uses"),
        promo.get("valid_from"),
        promo.get("valid_until"),
        bool(promo.get("is_active", True)),
    )


def create_promo(conn, promo: Dict[str, Any]) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO svitanok.promo_codes (
                code, description, discount_type, discount_value, min_order_amount,
                max_uses, valid_from, valid_until, is_active
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {PROMO_COLUMNS};
            """,
            _promo_params(promo),
        )
        return cur.fetchone()


def update_promo(conn, promo_id: int, promo: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            UPDATE svitanok.promo_codes
            SET code = %s, description = %s, discount_type = %s, discount_value = %s,
                min_order_amount = %s, max_uses = %s, valid_from = %s, valid_until = %s,
                is_active = %s
            WHERE id = %s
            RETURNING {PROMO_COLUMNS};
            """,
            _promo_params(promo) + (int(promo_id),),
        )
        return cur.fetchone()


def delete_promo(conn, promo_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute("DELETE FROM svitanok.promo_codes WHERE id = %s RETURNING id;", (int(promo_id),))
        return cur.fetchone() is not None
