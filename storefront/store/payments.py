from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb


def transaction_exists(conn, transaction_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM svitanok.payment_transactions WHERE transaction_id = %s LIMIT 1;",
            (transaction_id,),
        )
        return cur.fetchone() is not None


def lock_order(conn, order_id: Optional[int] = None, invoice_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        if order_id is not None:
            cur.execute(
                """
                SELECT id, status, payment_status, total_price, invoice_id, customer_name, customer_phone
                FROM svitanok.orders WHERE id = %s FOR UPDATE;
                """,
                (int(order_id),),
            )
        else:
            cur.execute(
                """
                SELECT id, status, payment_status, total_price, invoice_id, customer_name, customer_phone
                FROM svitanok.orders WHERE invoice_id = %s FOR UPDATE;
                """,
                (invoice_id,),
            )
        return cur.fetchone()


def latest_event_time(conn, invoice_id: str) -> Optional[datetime]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT max(event_time) FROM svitanok.payment_transactions WHERE invoice_id = %s;",
            (invoice_id,),
        )
        row = cur.fetchone()
    return row[0] if row else None


def insert_transaction(conn, event, order_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO svitanok.payment_transactions (
                transaction_id, provider, order_id, invoice_id, provider_status, status,
                amount, currency, event_time, source, payload
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
            """,
            (
                event.transaction_id,
                event.provider,
                int(order_id),
                event.invoice_id,
                event.provider_status,
                event.status,
                event.amount,
                event.currency,
                event.event_time,
                event.source,
                Jsonb(event.payload),
            ),
        )


def update_order_payment(
    conn,
    order_id: int,
    payment_status: str,
    order_status: str,
    transaction_id: str,
    history_entry: Dict[str, Any],
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE svitanok.orders
            SET payment_status = %s,
                status = %s,
                payment_transaction_id = %s,
                provider_data = jsonb_set(
                    provider_data,
                    '{history}',
                    COALESCE(provider_data->'history', '[]'::jsonb) || %s
                ),
                updated_at = now()
            WHERE id = %s;
            """,
            (payment_status, order_status, transaction_id, Jsonb([history_entry]), int(order_id)),
        )
